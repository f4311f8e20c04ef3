import os
import re
import random
import logging
from typing import Dict, List, Optional

import requests

import config

logger = logging.getLogger(__name__)

MAX_QUESTION_TEXT_LENGTH = 2000
MAX_ANSWER_LENGTH = 500


class ContentLoadError(Exception):
    """Raised when a question selection can't be resolved to any questions."""
    pass


def _sanitize_text(text: str) -> str:
    """Strip HTML tags and control characters from sheet text."""
    text = re.sub(r'<[^>]+>', '', text)
    text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', text)
    return text.strip()


def parse_sheet_text(text: str, sheet_id: str) -> Dict[str, List[dict]]:
    """
    Parse a question sheet into ``{category: [{question, answer}, ...]}``.

    Categories are separated by blank lines. The first line of each block is
    the category title (a trailing colon is dropped); every other line is
    ``question => answer``. Lines starting with ``//`` are comments.
    """
    categories: Dict[str, List[dict]] = {}
    blocks = re.split(r'\n\s*\n', text.replace('\r', '').strip())
    line_offset = 0
    for block in blocks:
        lines = block.split('\n')
        block_start = line_offset
        line_offset += len(lines) + 1
        title = lines[0].strip().rstrip(':').strip()
        if not title:
            logger.warning("Sheet '%s': block at line %d has no title, skipping", sheet_id, block_start + 1)
            continue
        items = []
        for i, line in enumerate(lines[1:], start=block_start + 2):
            line = line.strip()
            if not line or line.startswith('//'):
                continue
            question, sep, answer = line.partition('=>')
            question = _sanitize_text(question)[:MAX_QUESTION_TEXT_LENGTH]
            answer = _sanitize_text(answer)[:MAX_ANSWER_LENGTH]
            if not sep or not question or not answer:
                raise ContentLoadError(
                    f"Invalid line {i} in sheet '{sheet_id}' (category '{title}'): {line[:50]}"
                )
            items.append({"question": question, "answer": answer})
        if items:
            categories[title] = items
    return categories


class QuestionsManager:
    """Discovers question sheets on disk or on a static HTTP server."""

    def __init__(self, questions_dir: str = config.QUESTIONS_DIR,
                 base_url: str = config.QUESTIONS_BASE_URL):
        self.questions_dir = questions_dir
        self.base_url = base_url.rstrip("/")
        self._cache: Dict[str, Dict[str, List[dict]]] = {}

    def _sheet_files(self) -> List[str]:
        if self.base_url:
            try:
                response = requests.get(f"{self.base_url}/index.json", timeout=config.QUESTIONS_HTTP_TIMEOUT)
                response.raise_for_status()
                sheets = response.json().get("sheets", [])
            except (requests.RequestException, ValueError) as e:
                logger.error("Could not fetch sheet index from %s: %s", self.base_url, e)
                return []
            return [s for s in sheets if isinstance(s, str) and s.endswith(".txt")]
        if not os.path.isdir(self.questions_dir):
            logger.warning("Questions directory %s does not exist", self.questions_dir)
            return []
        return sorted(f for f in os.listdir(self.questions_dir) if f.endswith(".txt"))

    def _read_sheet(self, filename: str) -> str:
        if self.base_url:
            try:
                response = requests.get(f"{self.base_url}/{filename}", timeout=config.QUESTIONS_HTTP_TIMEOUT)
                response.raise_for_status()
            except requests.RequestException as e:
                raise ContentLoadError(f"Failed to download sheet {filename}: {e}")
            return response.text
        with open(os.path.join(self.questions_dir, filename), encoding="utf-8") as f:
            return f.read()

    def _load_sheet(self, sheet_id: str) -> Optional[Dict[str, List[dict]]]:
        if sheet_id in self._cache:
            return self._cache[sheet_id]
        filename = f"{sheet_id}.txt"
        if filename not in self._sheet_files():
            return None
        categories = parse_sheet_text(self._read_sheet(filename), sheet_id)
        self._cache[sheet_id] = categories
        logger.info("Loaded sheet '%s' with %d categories", sheet_id, len(categories))
        return categories

    def get_available_sheets(self) -> List[dict]:
        """Selectable ids: each sheet as a whole plus ``sheet:Category`` per category."""
        items = []
        for filename in self._sheet_files():
            sheet_id = filename[:-len(".txt")]
            try:
                categories = self._load_sheet(sheet_id) or {}
            except ContentLoadError as e:
                logger.error("Skipping sheet %s: %s", filename, e)
                continue
            items.append({"id": sheet_id, "name": sheet_id, "isCustom": False})
            for title in categories:
                items.append({"id": f"{sheet_id}:{title}", "name": title, "isCustom": False})
        return items

    def get_questions_for_sheet(self, selectable_id: str) -> List[dict]:
        sheet_id, _, category = selectable_id.partition(":")
        categories = self._load_sheet(sheet_id)
        if categories is None:
            logger.warning("Unknown sheet: %s", sheet_id)
            return []
        if category:
            if category not in categories:
                logger.warning("Category '%s' not found in sheet '%s'", category, sheet_id)
                return []
            return [dict(q) for q in categories[category]]
        return [dict(q) for items in categories.values() for q in items]

    def get_sheet_display_name(self, selectable_id: str) -> str:
        return selectable_id.partition(":")[2] or selectable_id


class QuizEngine:
    """Ordered question set for one game plus answer checking."""

    def __init__(self, questions_manager: Optional[QuestionsManager] = None,
                 rng: Optional[random.Random] = None):
        self.questions_manager = questions_manager
        self.rng = rng or random.Random()
        self.questions: List[dict] = []
        self.sources: Dict[str, str] = {}  # source id -> display name, in load order
        self.difficulty = config.DEFAULT_DIFFICULTY
        self.correct_answer_count = 0

    async def load_questions(self, selection: List[str], difficulty: str = config.DEFAULT_DIFFICULTY):
        if self.questions_manager is None:
            self.questions_manager = QuestionsManager()
        self.difficulty = difficulty
        self.questions = []
        self.sources = {}
        self.correct_answer_count = 0

        loaded: List[dict] = []
        for selectable_id in selection:
            items = self.questions_manager.get_questions_for_sheet(selectable_id)
            if not items:
                logger.warning("No questions found for selection '%s'", selectable_id)
                continue
            self.sources[selectable_id] = self.questions_manager.get_sheet_display_name(selectable_id)
            loaded.extend({**q, "sheet_id": selectable_id} for q in items)
            logger.info("Loaded %d questions from %s", len(items), selectable_id)

        if not loaded:
            raise ContentLoadError(f"No questions available for selection: {', '.join(selection) or '(empty)'}")

        self.rng.shuffle(loaded)
        self.questions = loaded
        logger.info("Total %d questions loaded (difficulty %s)", len(loaded), difficulty)

    @classmethod
    def from_host_data(cls, questions_data: dict, difficulty: str,
                       rng: Optional[random.Random] = None) -> "QuizEngine":
        """Build an engine from the ``questionsData`` a host sends in GAME_INFO."""
        engine = cls(rng=rng)
        engine.difficulty = difficulty
        loaded: List[dict] = []
        for sheet in questions_data.get("sheets", []):
            questions = sheet.get("questions") or []
            if not questions:
                continue
            engine.sources[sheet["id"]] = sheet.get("name", sheet["id"])
            loaded.extend(
                {"question": q["question"], "answer": q["answer"], "sheet_id": sheet["id"]}
                for q in questions
            )
        if not loaded:
            raise ContentLoadError("Host data contains no questions")
        engine.rng.shuffle(loaded)
        engine.questions = loaded
        return engine

    def to_questions_data(self) -> dict:
        sheets = []
        for source_id, name in self.sources.items():
            sheets.append({
                "id": source_id,
                "name": name,
                "isCustom": False,
                "questions": [
                    {"question": q["question"], "answer": q["answer"]}
                    for q in self.questions if q["sheet_id"] == source_id
                ],
            })
        return {"sheets": sheets}

    def get_question_count(self) -> int:
        return len(self.questions)

    def get_question_data(self, index: int) -> Optional[dict]:
        if index < 0 or index >= len(self.questions):
            return None
        return dict(self.questions[index])

    def get_correct_answer(self, index: int) -> Optional[str]:
        question = self.get_question_data(index)
        return question["answer"] if question else None

    def get_shuffled_answers(self, index: int) -> List[str]:
        """Correct answer plus distractors drawn from the other answers in the set."""
        question = self.get_question_data(index)
        if not question:
            return []
        correct = question["answer"]
        seen = {correct.strip().lower()}
        answers = [correct]
        for i, other in enumerate(self.questions):
            if len(answers) > config.MAX_DISTRACTORS:
                break
            key = other["answer"].strip().lower()
            if i == index or key in seen:
                continue
            seen.add(key)
            answers.append(other["answer"])
        if len(answers) == 1:
            logger.warning("Could not generate distractors for question %d", index)
        self.rng.shuffle(answers)
        return answers

    def check_answer(self, index: int, submitted) -> dict:
        correct = self.get_correct_answer(index)
        if correct is None:
            return {"is_correct": False, "correct_answer": None}
        is_correct = isinstance(submitted, str) and submitted.strip().lower() == correct.strip().lower()
        if is_correct:
            self.correct_answer_count += 1
        return {"is_correct": is_correct, "correct_answer": correct}

    def get_correct_count(self) -> int:
        return self.correct_answer_count

    def reset_progress(self):
        self.correct_answer_count = 0
