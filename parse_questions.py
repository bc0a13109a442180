#!/usr/bin/env python3
"""
Parse a tagged question bank ([I]/[Q]/[A]-[D]) into Question records,
and write wrong-answer export files in the same format.
"""

import argparse
import json
import logging
import sys
from dataclasses import asdict, dataclass
from pathlib import Path

import requests

logger = logging.getLogger(__name__)

RECORD_MARKER = "[I]"
QUESTION_TAG = "[Q]"
OPTION_TAGS = ("[A]", "[B]", "[C]", "[D]")
PLACEHOLDER_TAG = "[P]"
TAG_WIDTH = 3
OPTION_COUNT = 4

DEFAULT_TIMEOUT = 10


class QuizError(Exception):
    """Base class for every error raised by the quiz client."""


class LoadError(QuizError):
    """The question bank could not be fetched or read."""


class ValidationError(QuizError):
    """A request was refused locally; nothing changed."""


@dataclass
class Question:
    """A single four-option question from the bank."""
    id: str
    question: str
    options: list  # exactly four option strings, bank order
    correct_answer: str


def _is_tagged(line: str) -> bool:
    return line.startswith((QUESTION_TAG, PLACEHOLDER_TAG) + OPTION_TAGS)


def parse_record(block: str):
    """Parse one record (the text after an [I] marker).

    Returns a Question, or None when the record is incomplete.
    The [A] option doubles as the correct answer.
    """
    lines = [line for line in block.strip().split("\n") if line.strip()]
    head = lines[0].strip() if lines else ""
    record_id = "" if _is_tagged(head) else head
    lines = lines[1:]
    question_text = next(
        (line[TAG_WIDTH:].strip() for line in lines if line.startswith(QUESTION_TAG)), ""
    )
    options = [line[TAG_WIDTH:].strip() for line in lines if line.startswith(OPTION_TAGS)]
    correct_answer = next(
        (line[TAG_WIDTH:].strip() for line in lines if line.startswith(OPTION_TAGS[0])), ""
    )

    if not record_id or not question_text or len(options) != OPTION_COUNT or not correct_answer:
        return None

    return Question(id=record_id, question=question_text, options=options,
                    correct_answer=correct_answer)


def parse_question_bank(text: str) -> list:
    """Split bank text on [I] and parse every record, skipping malformed ones."""
    questions = []
    for block in text.split(RECORD_MARKER):
        if not block.strip():
            continue
        question = parse_record(block)
        if question is None:
            logger.warning("Skipping malformed question block: %r", block.strip()[:120])
            continue
        questions.append(question)
    return questions


def fetch_question_bank(url: str, timeout: float = DEFAULT_TIMEOUT) -> str:
    """GET the bank text. Any network or HTTP failure becomes a LoadError."""
    try:
        response = requests.get(url, timeout=timeout)
    except requests.RequestException as e:
        raise LoadError(f"Could not load question bank from {url}: {e}") from e

    if not response.ok:
        raise LoadError(
            f"Could not load question bank: HTTP error! status: {response.status_code}. "
            f"Make sure the bank file is served at {url}."
        )
    response.encoding = "utf-8"
    return response.text


def read_question_bank(path) -> str:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return f.read()
    except OSError as e:
        raise LoadError(f"Could not read question bank {path}: {e}") from e


def load_question_bank(source: str, timeout: float = DEFAULT_TIMEOUT) -> list:
    """Load and parse a bank from an http(s) URL or a local file path."""
    if source.startswith(("http://", "https://")):
        text = fetch_question_bank(source, timeout=timeout)
    else:
        text = read_question_bank(source)
    questions = parse_question_bank(text)
    logger.info("Loaded %d questions from %s", len(questions), source)
    return questions


def wrong_questions(questions: list, wrong_ids) -> list:
    """Questions of the pool whose id is in wrong_ids, in pool order."""
    wrong_ids = set(wrong_ids)
    return [q for q in questions if q.id in wrong_ids]


def format_question(question: Question) -> str:
    lines = [f"{RECORD_MARKER}{question.id}", f"{QUESTION_TAG}{question.question}"]
    lines += [f"{tag}{opt}" for tag, opt in zip(OPTION_TAGS, question.options)]
    lines.append(PLACEHOLDER_TAG)
    return "\n".join(lines) + "\n"


def export_wrong_answers(questions: list, wrong_ids) -> str:
    """Render the wrong-answer set as a bank file.

    Options keep bank order, so [A] is still the correct one; [P] stays empty.
    """
    selected = wrong_questions(questions, wrong_ids)
    if not selected:
        raise ValidationError("The wrong-answer book is empty!")
    return "\n".join(format_question(q) for q in selected)


def export_filename(session_id=None) -> str:
    return f"wrong_answers_{session_id or 'export'}.txt"


def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    parser = argparse.ArgumentParser(description="Validate a tagged question bank")
    parser.add_argument("bank", help="Bank file path or http(s) URL (e.g. tk.txt)")
    parser.add_argument("--output", default=None,
                        help="Write parsed questions as JSON to this file")
    parser.add_argument("--export-ids", default=None,
                        help="Comma-separated question ids to export as a wrong-answer file")
    parser.add_argument("--session", default=None,
                        help="Session ID used to name the export file")
    args = parser.parse_args()

    try:
        questions = load_question_bank(args.bank)
    except LoadError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Parsed {len(questions)} complete questions")

    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            json.dump([asdict(q) for q in questions], f, indent=2, ensure_ascii=False)
        print(f"Saved to {args.output}")

    if args.export_ids:
        ids = [i.strip() for i in args.export_ids.split(",") if i.strip()]
        try:
            content = export_wrong_answers(questions, ids)
        except ValidationError as e:
            print(f"Error: {e}")
            sys.exit(1)
        out_path = Path(export_filename(args.session))
        out_path.write_text(content, encoding="utf-8")
        print(f"Exported {content.count(RECORD_MARKER)} questions to {out_path}")


if __name__ == "__main__":
    main()
