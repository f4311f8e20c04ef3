"""
Question-iteration core shared by every game mode.

A game walks ``IDLE -> PRESENTING(i) -> ANSWERED(i) -> PRESENTING(i+1) ... ->
FINISHED``. Subclasses customise timing and scoring through four hooks that
run around the transitions:

* ``_before_next_question``  - before the next question is picked
* ``_after_question_presented`` - after QUESTION_NEW has been published
* ``_before_answer_check``   - before a submitted answer is checked
* ``_before_finish``         - once, when the game finishes

plus ``_calculate_score`` and ``_after_answer_checked``. Multiplayer modes
send their network messages from these hooks, so the order here is what
guarantees a score report follows every answer and the finish report is sent
exactly once.
"""
from enum import Enum
from typing import Optional
import asyncio
import logging

import config
from events import EventChannel, GameEvent
from quiz_engine import QuizEngine
from timer import CountdownTimer

logger = logging.getLogger(__name__)


class CoreState(str, Enum):
    IDLE = "idle"
    PRESENTING = "presenting"
    ANSWERED = "answered"
    FINISHED = "finished"


class BaseGameMode:
    mode = "base"

    def __init__(self, settings: dict, quiz_engine: QuizEngine, player_name: str = "Player",
                 events: Optional[EventChannel] = None,
                 feedback_delay: float = config.ANSWER_FEEDBACK_DELAY):
        if quiz_engine is None:
            raise ValueError("A game mode requires a QuizEngine instance")
        self.settings = settings
        self.difficulty = settings.get("difficulty", config.DEFAULT_DIFFICULTY)
        self.quiz_engine = quiz_engine
        self.player_name = player_name
        self.events = events or EventChannel()
        self.feedback_delay = feedback_delay

        self.state = CoreState.IDLE
        self.current_question_index = -1
        self.current_question: Optional[dict] = None
        self.score = 0
        self.is_finished = False
        self.last_answer_correct: Optional[bool] = None
        self.timer: Optional[CountdownTimer] = None
        self._advance_task: Optional[asyncio.Task] = None

    def _create_timer(self) -> CountdownTimer:
        duration = config.DIFFICULTY_DURATIONS.get(
            self.difficulty, config.DIFFICULTY_DURATIONS[config.DEFAULT_DIFFICULTY]
        )
        return CountdownTimer(duration, on_tick=self._handle_timer_tick, on_end=self.handle_time_up)

    async def start(self):
        if self.state != CoreState.IDLE:
            logger.warning("[%s] start() called twice, ignoring", self.mode)
            return
        total = self.quiz_engine.get_question_count()
        if total == 0:
            logger.error("[%s] Cannot start: no questions loaded", self.mode)
            self.events.publish(GameEvent.ERROR, message="No questions loaded", context=f"{self.mode}-start")
            await self.finish_game()
            return
        logger.info("[%s] Starting game for '%s' with %d questions", self.mode, self.player_name, total)
        self.events.publish(
            GameEvent.GAME_STARTED,
            mode=self.mode,
            settings={**self.settings, "total_questions": total},
        )
        await self.next_question()

    async def next_question(self):
        if self.is_finished:
            return
        await self._before_next_question()
        self.last_answer_correct = None
        next_index = self.current_question_index + 1
        total = self.quiz_engine.get_question_count()

        if next_index >= total:
            logger.info("[%s] Reached end of questions (%d/%d)", self.mode, next_index, total)
            await self.finish_game()
            return

        question = self.quiz_engine.get_question_data(next_index)
        if question is None:
            logger.error("[%s] No question data for index %d, finishing", self.mode, next_index)
            await self.finish_game()
            return

        self.current_question_index = next_index
        self.current_question = question
        self.state = CoreState.PRESENTING
        self.events.publish(
            GameEvent.QUESTION_NEW,
            question_index=next_index,
            total_questions=total,
            question=question["question"],
            answers=self.quiz_engine.get_shuffled_answers(next_index),
        )
        await self._after_question_presented()

    async def submit_answer(self, answer) -> bool:
        """Check an answer for the current question. Returns False when ignored."""
        if self.is_finished or self.state != CoreState.PRESENTING:
            logger.info("[%s] Ignoring answer (state %s)", self.mode, self.state.value)
            return False
        await self._before_answer_check()
        result = self.quiz_engine.check_answer(self.current_question_index, answer)
        await self._resolve_answer(result["is_correct"], result["correct_answer"], answer)
        return True

    async def handle_time_up(self):
        if self.is_finished or self.state != CoreState.PRESENTING:
            return
        index = self.current_question_index
        logger.info("[%s] Time's up for question %d", self.mode, index + 1)
        self.events.publish(GameEvent.TIME_UP, question_index=index)
        await self._resolve_answer(False, self.quiz_engine.get_correct_answer(index), None)

    async def _resolve_answer(self, is_correct: bool, correct_answer, submitted):
        self.last_answer_correct = is_correct
        self.state = CoreState.ANSWERED
        score_delta = self._calculate_score(is_correct)
        self.events.publish(
            GameEvent.ANSWER_CHECKED,
            question_index=self.current_question_index,
            is_correct=is_correct,
            score_delta=score_delta,
            correct_answer=correct_answer,
            submitted_answer=submitted,
        )
        await self._after_answer_checked(is_correct, score_delta)
        await self._schedule_advance()

    async def _schedule_advance(self):
        if self.is_finished:
            return
        if self.feedback_delay <= 0:
            await self.next_question()
            return
        self._cancel_advance()
        self._advance_task = asyncio.create_task(self._advance_after_delay())

    async def _advance_after_delay(self):
        try:
            await asyncio.sleep(self.feedback_delay)
        except asyncio.CancelledError:
            return
        self._advance_task = None
        if not self.is_finished and self.state == CoreState.ANSWERED:
            await self.next_question()

    def _cancel_advance(self):
        task, self._advance_task = self._advance_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def finish_game(self):
        if self.is_finished:
            return
        logger.info("[%s] Finishing game for '%s'", self.mode, self.player_name)
        self.is_finished = True
        self.state = CoreState.FINISHED
        self._cancel_advance()
        await self._before_finish()
        results = self._get_final_results({
            "player_name": self.player_name,
            "mode": self.mode,
            "total_questions": self.quiz_engine.get_question_count(),
            "correct_answers": self.quiz_engine.get_correct_count(),
            "settings": self.settings,
            "score": self.score,
        })
        self._after_finish(results)

    def destroy(self):
        """Stop timers and pending advances without reporting anything."""
        if self.timer:
            self.timer.stop()
        self._cancel_advance()
        self.is_finished = True
        self.state = CoreState.FINISHED

    # --- Hooks ---

    async def _before_next_question(self):
        if self.timer:
            self.timer.stop()

    async def _after_question_presented(self):
        if self.timer:
            self.timer.reset()
            self.timer.start()

    async def _before_answer_check(self):
        if self.timer:
            self.timer.stop()

    async def _before_finish(self):
        if self.timer:
            self.timer.stop()

    def _calculate_score(self, is_correct: bool, elapsed: Optional[float] = None) -> int:
        """
        BASE_SCORE for a correct answer plus up to MAX_TIME_BONUS, scaled by the
        fraction of the question's time still left. Harder difficulties have
        shorter timers, so the same absolute speed earns a larger bonus there.
        """
        if not is_correct:
            return 0
        if self.timer is None or self.timer.duration_s <= 0:
            return config.BASE_SCORE
        if elapsed is None:
            elapsed = self.timer.elapsed
        time_factor = max(0.0, 1 - (elapsed / self.timer.duration_s))
        return config.BASE_SCORE + round(config.MAX_TIME_BONUS * time_factor)

    async def _after_answer_checked(self, is_correct: bool, score_delta: int):
        if score_delta > 0:
            self.score += score_delta
            self.events.publish(
                GameEvent.SCORE_UPDATED,
                player_name=self.player_name,
                new_score=self.score,
                delta=score_delta,
            )

    def _get_final_results(self, base_results: dict) -> dict:
        return base_results

    def _after_finish(self, results: dict):
        self.events.publish(GameEvent.GAME_FINISHED, mode=self.mode, results=results)

    def _handle_timer_tick(self, remaining_ms: int):
        if not self.is_finished:
            self.events.publish(GameEvent.TIME_TICK, remaining_ms=remaining_ms)


class SinglePlayerGame(BaseGameMode):
    """Timed solo game; a lapsed timer counts as a wrong answer."""
    mode = "single"

    def __init__(self, settings: dict, quiz_engine: QuizEngine, player_name: str = "Player",
                 events: Optional[EventChannel] = None,
                 feedback_delay: float = config.ANSWER_FEEDBACK_DELAY):
        super().__init__(settings, quiz_engine, player_name, events, feedback_delay)
        self.timer = self._create_timer()

    def _get_final_results(self, base_results: dict) -> dict:
        selection = self.settings.get("selection") or []
        return {
            **base_results,
            "game_name": ", ".join(selection) or "Unknown",
            "difficulty": self.difficulty,
            "eligible_for_highscore": self.score > 0,
        }


class PracticeGame(BaseGameMode):
    """Untimed, unscored run through the questions."""
    mode = "practice"

    def _calculate_score(self, is_correct: bool, elapsed: Optional[float] = None) -> int:
        return 0
