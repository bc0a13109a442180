#!/usr/bin/env python3
"""
Exam Practice Tool
A terminal front end for randomized 30-question practice exams, with
progress kept on the session server under a 5-character study ID.
"""

import argparse
import json
import logging
import os
import random
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import requests
from dotenv import load_dotenv

from parse_questions import (
    LoadError, Question, QuizError, ValidationError,
    export_filename, export_wrong_answers, load_question_bank, wrong_questions,
)

logger = logging.getLogger(__name__)

EXAM_QUESTION_COUNT = 30
PASSING_SCORE = 25
DEFAULT_API_URL = "http://localhost:5000"
HTTP_TIMEOUT = 10


class StateError(ValidationError):
    """The action is not available in the current exam state."""


class SessionError(QuizError):
    """A call to the session API failed."""

    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status


class VerificationError(SessionError):
    """The server rejected the bot-verification token."""


@dataclass
class ShuffledQuestion:
    """A question as it appears in one exam, with its own option order."""
    question: Question
    shuffled_options: list

    @property
    def id(self):
        return self.question.id

    @property
    def text(self):
        return self.question.question

    @property
    def correct_answer(self):
        return self.question.correct_answer


@dataclass
class ExamResult:
    score: int
    total: int
    passed: object  # True/False for a full exam, None for review practice
    wrong_ids: list

    @property
    def result(self):
        if self.passed is None:
            return None
        return "pass" if self.passed else "fail"


@dataclass
class SessionSnapshot:
    """Client copy of a server session row; the server copy wins."""
    id: str
    wrong_ids: set = field(default_factory=set)
    exams_taken: int = 0
    exams_passed: int = 0
    exams_failed: int = 0

    @classmethod
    def from_response(cls, data: dict) -> "SessionSnapshot":
        raw = data.get("wrong_question_ids", "[]")
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except ValueError:
                raw = []
        wrong_ids = set(raw) if isinstance(raw, list) else set()
        return cls(
            id=data["id"],
            wrong_ids=wrong_ids,
            exams_taken=int(data.get("exams_taken", 0)),
            exams_passed=int(data.get("exams_passed", 0)),
            exams_failed=int(data.get("exams_failed", 0)),
        )


@dataclass
class WelcomeInfo:
    city: str
    country: str
    colo: str


def shuffle(items, rng=random) -> list:
    """Fisher-Yates shuffle into a new list; the input is left untouched."""
    result = list(items)
    for i in range(len(result) - 1, 0, -1):
        j = rng.randrange(i + 1)
        result[i], result[j] = result[j], result[i]
    return result


# ---------------------------------------------------------------------------
# Exam state machine
# ---------------------------------------------------------------------------

class ExamState(Enum):
    LOADING = "loading"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    PRE_SUBMIT = "pre_submit"
    FINISHED = "finished"
    REVIEW = "review"


class ExamMachine:
    """Drives one client through loading, exams, review and results.

    The question pool and the session's wrong-answer set are held here
    rather than in module globals. Refused actions raise ValidationError
    (or StateError) and leave every attribute as it was.
    """

    def __init__(self, rng=random):
        self.rng = rng
        self.state = ExamState.LOADING
        self.pool = []
        self.load_error = None
        self.wrong_ids = set()
        self.title = "Practice Exam"
        self.review_mode = False
        self.review_origin = ExamState.READY
        self.exam_questions = []
        self.current_index = 0
        self.answers = {}
        self.last_result = None

    # -- loading -----------------------------------------------------------

    def finish_loading(self, questions: list):
        self._require(ExamState.LOADING)
        self.pool = list(questions)
        self.state = ExamState.READY

    def fail_loading(self, message: str):
        self.load_error = LoadError(message)

    def _require(self, *states):
        if self.load_error is not None:
            raise self.load_error
        if self.state not in states:
            raise StateError(f"Not available while {self.state.value}")

    # -- starting ----------------------------------------------------------

    def set_wrong_ids(self, wrong_ids):
        self.wrong_ids = set(wrong_ids)

    def review_questions(self) -> list:
        return wrong_questions(self.pool, self.wrong_ids)

    def _checked_review_questions(self) -> list:
        if not self.wrong_ids:
            raise ValidationError("The wrong-answer book is empty!")
        selected = self.review_questions()
        if not selected:
            raise ValidationError("None of the wrong answers exist in the current question bank.")
        return selected

    def _begin(self, questions: list, review: bool):
        self.exam_questions = [
            ShuffledQuestion(question=q, shuffled_options=shuffle(q.options, self.rng))
            for q in questions
        ]
        self.review_mode = review
        self.title = "Wrong-Answer Practice" if review else "Practice Exam"
        self.current_index = 0
        self.answers = {}
        self.last_result = None
        self.state = ExamState.IN_PROGRESS

    def start_exam(self):
        self._require(ExamState.READY, ExamState.FINISHED, ExamState.REVIEW)
        if len(self.pool) < EXAM_QUESTION_COUNT:
            raise ValidationError(
                f"The question bank has fewer than {EXAM_QUESTION_COUNT} questions."
            )
        sample = shuffle(self.pool, self.rng)[:EXAM_QUESTION_COUNT]
        self._begin(sample, review=False)

    def open_review(self):
        self._require(ExamState.READY, ExamState.FINISHED)
        self._checked_review_questions()
        self.review_origin = self.state
        self.state = ExamState.REVIEW

    def close_review(self):
        """Return to the screen the review was opened from."""
        self._require(ExamState.REVIEW)
        self.state = self.review_origin

    def start_review_exam(self):
        self._require(ExamState.REVIEW, ExamState.READY, ExamState.FINISHED)
        selected = self._checked_review_questions()
        self._begin(shuffle(selected, self.rng), review=True)

    # -- answering ---------------------------------------------------------

    @property
    def current_question(self):
        if not self.exam_questions:
            return None
        return self.exam_questions[self.current_index]

    def answer(self, question_id: str, option: str):
        self._require(ExamState.IN_PROGRESS)
        question = next((q for q in self.exam_questions if q.id == question_id), None)
        if question is None:
            raise ValidationError(f"Question {question_id} is not part of this exam.")
        if option not in question.shuffled_options:
            raise ValidationError(f"'{option}' is not an option of question {question_id}.")
        self.answers[question_id] = option

    def go_to(self, index: int):
        self._require(ExamState.IN_PROGRESS)
        if not 0 <= index < len(self.exam_questions):
            raise ValidationError(f"No question number {index + 1}.")
        self.current_index = index

    def previous(self):
        self._require(ExamState.IN_PROGRESS)
        if self.current_index > 0:
            self.current_index -= 1

    def next(self):
        self._require(ExamState.IN_PROGRESS)
        if self.current_index < len(self.exam_questions) - 1:
            self.current_index += 1
        else:
            self.state = ExamState.PRE_SUBMIT

    # -- submitting --------------------------------------------------------

    def unanswered(self) -> list:
        return [q for q in self.exam_questions if q.id not in self.answers]

    def back_to_exam(self):
        self._require(ExamState.PRE_SUBMIT)
        self.state = ExamState.IN_PROGRESS

    def score(self) -> int:
        return sum(1 for q in self.exam_questions if self.answers.get(q.id) == q.correct_answer)

    def submit(self) -> ExamResult:
        self._require(ExamState.PRE_SUBMIT)
        score = self.score()
        passed = None if self.review_mode else score >= PASSING_SCORE
        wrong = [q.id for q in self.exam_questions if self.answers.get(q.id) != q.correct_answer]
        self.last_result = ExamResult(score=score, total=len(self.exam_questions),
                                      passed=passed, wrong_ids=wrong)
        self.state = ExamState.FINISHED
        return self.last_result


# ---------------------------------------------------------------------------
# Session API client
# ---------------------------------------------------------------------------

class SessionClient:
    """Talks to /api/session and keeps the last snapshot the server returned."""

    def __init__(self, base_url: str = DEFAULT_API_URL, timeout: float = HTTP_TIMEOUT,
                 http=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = http or requests.Session()
        self.snapshot = None

    @property
    def session_id(self):
        return self.snapshot.id if self.snapshot else None

    @property
    def wrong_ids(self) -> set:
        return set(self.snapshot.wrong_ids) if self.snapshot else set()

    def reset(self):
        self.snapshot = None

    def welcome(self):
        """Best effort: None on any failure."""
        try:
            response = self.http.get(f"{self.base_url}/api/welcome", timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
            return WelcomeInfo(city=data["city"], country=data["country"], colo=data["colo"])
        except (requests.RequestException, ValueError, KeyError, TypeError) as e:
            logger.debug("Welcome lookup failed: %s", e)
            return None

    def _post(self, body: dict) -> SessionSnapshot:
        try:
            response = self.http.post(f"{self.base_url}/api/session", json=body,
                                      timeout=self.timeout)
        except requests.RequestException as e:
            raise SessionError(f"Could not reach the session server: {e}") from e

        if response.status_code == 403:
            raise VerificationError(response.text or "Verification failed", status=403)
        if not response.ok:
            raise SessionError(response.text or f"HTTP {response.status_code}",
                               status=response.status_code)
        try:
            snapshot = SessionSnapshot.from_response(response.json())
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise SessionError(f"Unexpected session response: {e}") from e
        self.snapshot = snapshot
        return snapshot

    def load(self, session_id: str, token=None) -> SessionSnapshot:
        """Load a session. On any failure the client forgets its session."""
        try:
            return self._post({"action": "load", "sessionId": session_id.upper(),
                               "turnstileToken": token})
        except SessionError:
            self.reset()
            raise

    def save(self, result: ExamResult) -> SessionSnapshot:
        return self._post({
            "action": "save",
            "sessionId": self.session_id,
            "payload": {"wrongAnswerIds": result.wrong_ids, "result": result.result},
        })

    def clear(self) -> SessionSnapshot:
        if not self.session_id:
            raise ValidationError("No active session to clear.")
        return self._post({"action": "clear", "sessionId": self.session_id})


# ---------------------------------------------------------------------------
# Terminal front end
# ---------------------------------------------------------------------------

class Colors:
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    BOLD = '\033[1m'
    DIM = '\033[2m'
    RESET = '\033[0m'


def colorize(text: str, color: str) -> str:
    return f"{color}{text}{Colors.RESET}"


def clear_screen():
    os.system('cls' if os.name == 'nt' else 'clear')


def pause(message="Press Enter to continue..."):
    input(colorize(message, Colors.DIM))


def print_header(welcome, client: SessionClient):
    print(colorize("╔════════════════════════════════════════════════════════════╗", Colors.CYAN))
    print(colorize("║           Exam Practice Tool                               ║", Colors.CYAN))
    print(colorize("╚════════════════════════════════════════════════════════════╝", Colors.CYAN))
    if welcome:
        print(colorize(f"Hello from {welcome.city}, {welcome.country}! "
                       f"Greetings from the {welcome.colo} data center.", Colors.DIM))
    snap = client.snapshot
    if snap:
        print(f"ID: {colorize(snap.id, Colors.YELLOW)}  │  Taken: {snap.exams_taken}  │  "
              f"{colorize(f'Passed: {snap.exams_passed}', Colors.GREEN)}  │  "
              f"{colorize(f'Failed: {snap.exams_failed}', Colors.RED)}")
    print()


def show_error(message: str):
    print(colorize(message, Colors.RED))
    pause()


def display_question(machine: ExamMachine):
    q = machine.current_question
    total = len(machine.exam_questions)
    print(colorize(f"{machine.title}  ", Colors.BOLD) +
          colorize(f"({machine.current_index + 1}/{total}, "
                   f"{len(machine.answers)} answered)", Colors.DIM))
    print()
    print(q.text)
    print()
    chosen = machine.answers.get(q.id)
    for i, option in enumerate(q.shuffled_options):
        marker = colorize("●", Colors.GREEN) if option == chosen else " "
        print(f" {marker} {colorize(str(i + 1), Colors.YELLOW)}. {option}")
    print()


def run_exam(machine: ExamMachine):
    """IN_PROGRESS loop. Returns once the machine reaches PRE_SUBMIT."""
    while machine.state == ExamState.IN_PROGRESS:
        clear_screen()
        display_question(machine)
        print(colorize("1-4 answer, n next, p previous, g<N> go to question N, s submit", Colors.DIM))
        choice = input(colorize("> ", Colors.YELLOW)).strip().lower()
        q = machine.current_question
        try:
            if choice in ("1", "2", "3", "4"):
                machine.answer(q.id, q.shuffled_options[int(choice) - 1])
                machine.next()
            elif choice == "n":
                machine.next()
            elif choice == "p":
                machine.previous()
            elif choice.startswith("g") and choice[1:].isdigit():
                machine.go_to(int(choice[1:]) - 1)
            elif choice == "s":
                machine.go_to(len(machine.exam_questions) - 1)
                machine.next()
        except ValidationError as e:
            show_error(str(e))


def confirm_submit(machine: ExamMachine) -> bool:
    """PRE_SUBMIT screen. True once submitted, False to go back."""
    clear_screen()
    missing = machine.unanswered()
    if missing:
        print(colorize(f"{len(missing)} question(s) are still unanswered:", Colors.YELLOW))
        numbers = [str(machine.exam_questions.index(q) + 1) for q in missing]
        print("  " + ", ".join(numbers))
    else:
        print(colorize("All questions answered.", Colors.GREEN))
    print()
    choice = input(colorize("Submit now? (yes/no): ", Colors.YELLOW)).strip().lower()
    if choice in ("y", "yes"):
        return True
    machine.back_to_exam()
    return False


def show_result(machine: ExamMachine, client: SessionClient, session_message):
    result = machine.last_result
    clear_screen()
    if result.passed is None:
        print(colorize(f"Practice complete: {result.score}/{result.total}", Colors.BOLD))
    elif result.passed:
        print(colorize(f"✓ PASSED  {result.score}/{result.total}", Colors.GREEN + Colors.BOLD))
    else:
        print(colorize(f"✗ FAILED  {result.score}/{result.total} "
                       f"(need {PASSING_SCORE})", Colors.RED + Colors.BOLD))
    if session_message:
        print(colorize(session_message, Colors.RED))
    elif client.session_id:
        print(f"Progress saved. Your study ID is {colorize(client.session_id, Colors.YELLOW)}")
    print()
    for i, q in enumerate(machine.exam_questions, 1):
        given = machine.answers.get(q.id)
        if given == q.correct_answer:
            print(f"{colorize('✓', Colors.GREEN)} {i}. {q.text}")
        else:
            print(f"{colorize('✗', Colors.RED)} {i}. {q.text}")
            print(f"     Your answer: {colorize(given or '(none)', Colors.RED)}")
            print(f"     Correct:     {colorize(q.correct_answer, Colors.GREEN)}")
    print()
    pause()


def finish_exam(machine: ExamMachine, client: SessionClient):
    """Submit, then save. A failed save never changes the score shown."""
    result = machine.submit()
    session_message = None
    try:
        client.save(result)
        machine.set_wrong_ids(client.wrong_ids)
    except SessionError as e:
        logger.warning("Saving session failed: %s", e)
        session_message = f"Saving session failed: {e}"
    show_result(machine, client, session_message)


def take_exam(machine: ExamMachine, client: SessionClient):
    while machine.state in (ExamState.IN_PROGRESS, ExamState.PRE_SUBMIT):
        run_exam(machine)
        if confirm_submit(machine):
            finish_exam(machine, client)


def show_review(machine: ExamMachine, client: SessionClient):
    """REVIEW screen: list, practice, clear on server, export."""
    while machine.state == ExamState.REVIEW:
        clear_screen()
        questions = machine.review_questions()
        print(colorize(f"WRONG-ANSWER BOOK ({len(questions)} questions)", Colors.BOLD))
        print()
        for i, q in enumerate(questions, 1):
            print(f"  {i}. {q.question}")
            print(colorize(f"     → {q.correct_answer}", Colors.GREEN))
        print()
        print("  1. Practice these questions")
        print("  2. Clear wrong answers on the server")
        print("  3. Export to TXT")
        print("  b. Back")
        choice = input(colorize("Choose option: ", Colors.YELLOW)).strip().lower()
        try:
            if choice == "1":
                machine.start_review_exam()
                take_exam(machine, client)
            elif choice == "2":
                confirm = input(colorize("Clear all wrong answers on the server? (yes/no): ",
                                         Colors.RED)).strip().lower()
                if confirm == "yes":
                    client.clear()
                    machine.set_wrong_ids(client.wrong_ids)
                    print(colorize("Wrong-answer book cleared!", Colors.GREEN))
                    pause()
                    machine.close_review()
            elif choice == "3":
                path = Path(export_filename(client.session_id))
                path.write_text(export_wrong_answers(machine.pool, machine.wrong_ids),
                                encoding="utf-8")
                print(colorize(f"Exported to {path}", Colors.GREEN))
                pause()
            elif choice == "b":
                machine.close_review()
        except SessionError as e:
            show_error(f"Clearing wrong answers failed: {e}")
        except ValidationError as e:
            show_error(str(e))


def prompt_load_session(machine: ExamMachine, client: SessionClient):
    session_id = input(colorize("5-character study ID: ", Colors.YELLOW)).strip().upper()
    token = input(colorize("Verification token: ", Colors.YELLOW)).strip()
    if not session_id or not token:
        show_error("Enter an ID and complete the verification.")
        return
    try:
        client.load(session_id, token)
    except SessionError as e:
        machine.set_wrong_ids(set())
        show_error(f"Loading session failed: {e}")
        return
    machine.set_wrong_ids(client.wrong_ids)


def show_menu(machine: ExamMachine, client: SessionClient, welcome) -> str:
    clear_screen()
    print_header(welcome, client)
    print(colorize("MENU:", Colors.BOLD))
    print(f"  1. Start exam ({EXAM_QUESTION_COUNT} random questions, "
          f"pass at {PASSING_SCORE})")
    print(f"  2. Wrong-answer book ({len(machine.wrong_ids)})")
    print("  3. Load a saved session")
    print("  q. Quit")
    print()
    return input(colorize("Choose option: ", Colors.YELLOW)).strip().lower()


def main():
    load_dotenv()
    logging.basicConfig(level=logging.WARNING)

    api_default = os.environ.get("QUIZ_API_URL", DEFAULT_API_URL)
    parser = argparse.ArgumentParser(description="Randomized practice exams")
    parser.add_argument("--api", default=api_default, help="Session server base URL")
    parser.add_argument("--bank", default=os.environ.get("QUESTION_BANK_URL"),
                        help="Question bank URL or file (default: <api>/tk.txt)")
    parser.add_argument("--session", default=None, help="Resume this study ID")
    args = parser.parse_args()

    client = SessionClient(args.api)
    machine = ExamMachine()

    print("Loading question bank...")
    try:
        machine.finish_loading(load_question_bank(args.bank or f"{client.base_url}/tk.txt"))
    except LoadError as e:
        machine.fail_loading(str(e))
        clear_screen()
        print(colorize("LOAD ERROR", Colors.RED + Colors.BOLD))
        print(str(e))
        sys.exit(1)

    welcome = client.welcome()
    if args.session:
        try:
            client.load(args.session)
            machine.set_wrong_ids(client.wrong_ids)
        except SessionError as e:
            show_error(f"Loading session failed: {e}")

    while True:
        choice = show_menu(machine, client, welcome)
        try:
            if choice == "1":
                machine.start_exam()
                take_exam(machine, client)
            elif choice == "2":
                machine.open_review()
                show_review(machine, client)
            elif choice == "3":
                prompt_load_session(machine, client)
            elif choice == "q":
                clear_screen()
                if client.session_id:
                    print(f"Your study ID is {colorize(client.session_id, Colors.YELLOW)}")
                print(colorize("Thanks for studying! Good luck on your exam!", Colors.GREEN))
                break
        except ValidationError as e:
            show_error(str(e))


if __name__ == "__main__":
    main()
