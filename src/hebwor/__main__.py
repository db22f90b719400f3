"""Main entry point for the bot."""
from hebwor.app import main

if __name__ == "__main__":
    main()
