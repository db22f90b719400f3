"""Seed the vocabulary table from a JSON word list.

Usage: hebwor-seed [--file data/vocabulary.json]
"""
import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.orm import Session

from hebwor.config import settings
from hebwor.logging_config import setup_logging
from hebwor.models.base import SessionLocal, init_db
from hebwor.models.levels import parse_level
from hebwor.models.models import VocabularyWord
from hebwor.services.progress_store import ProgressStore

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("hebrew_word", "russian_translation", "frequency_rank", "cefr_level")
OPTIONAL_FIELDS = ("part_of_speech", "example_sentence_hebrew", "example_sentence_russian")


def read_entries(path: Union[str, Path]) -> List[Dict[str, Any]]:
    """Read the JSON list of word entries."""
    with open(path, encoding="utf-8") as f:
        entries = json.load(f)
    if not isinstance(entries, list):
        raise ValueError(f"{path}: expected a JSON list of words")
    return entries


def _to_word(entry: Dict[str, Any]) -> Optional[VocabularyWord]:
    """Build a word from an entry, or None if the entry is unusable."""
    missing = [name for name in REQUIRED_FIELDS if not entry.get(name)]
    if missing:
        logger.warning(f"Skipping entry without {', '.join(missing)}: {entry}")
        return None
    try:
        level = parse_level(str(entry["cefr_level"]))
    except ValueError:
        logger.warning(f"Skipping {entry['hebrew_word']}: unknown level {entry['cefr_level']}")
        return None
    return VocabularyWord(
        hebrew_word=entry["hebrew_word"].strip(),
        russian_translation=entry["russian_translation"].strip(),
        frequency_rank=int(entry["frequency_rank"]),
        cefr_level=level.value,
        **{name: entry.get(name) for name in OPTIONAL_FIELDS},
    )


def load_vocabulary(db: Session, path: Union[str, Path]) -> int:
    """Insert words from the file that are not in the table yet.

    Returns the number of words inserted. Existing Hebrew words are left as they are.
    """
    existing = {hebrew for (hebrew,) in db.query(VocabularyWord.hebrew_word).all()}
    added = 0
    for entry in read_entries(path):
        word = _to_word(entry)
        if word is None or word.hebrew_word in existing:
            continue
        db.add(word)
        existing.add(word.hebrew_word)
        added += 1
    ProgressStore(db).commit()
    logger.info(f"Loaded {added} new words from {path}")
    return added


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Seed the Hebrew vocabulary table")
    parser.add_argument("--file", default=str(settings.paths.vocabulary_file), help="JSON word list")
    args = parser.parse_args(argv)

    setup_logging("Seeding vocabulary ...")
    if not Path(args.file).exists():
        logger.error(f"Vocabulary file not found: {args.file}")
        sys.exit(1)

    init_db()
    db = SessionLocal()
    try:
        load_vocabulary(db, args.file)
    finally:
        db.close()


if __name__ == "__main__":
    main()
