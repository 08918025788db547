# app.py — Adaptive Quiz Trainer v1.0
# - Learner + subject selection, weighted rounds of TF / CARD questions
# - Feedback writes (answer + stats merge) block advancing when the store fails

import logging
import os
import sqlite3
import threading
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

import db
from engines.encouragement import EncouragementCatalog
from engines.round_builder import MasteredPolicy, RoundBuilder
from engines.session_runner import InvalidTransitionError, PersistenceError, Phase, SessionRunner
from engines.stats_index import StatsIndex
from env_validation import get_env_bool, get_env_int, get_env_list, get_learner_roster
from item_bank import ItemValidationError, QuestionBank

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        # Validate environment variables first
        from env_validation import validate_environment
        validate_environment()

        db.init()
        _seed_learners()
        _sync_question_bank()
        logger.info(
            "Trainer ready | round size: %s | mastered policy: %s",
            _round_size(),
            _mastered_policy().value,
        )
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="Adaptive Quiz Trainer", version="1.0.0", lifespan=_lifespan)

STORE = db.SqliteTrainerStore()
ENCOURAGEMENT = EncouragementCatalog(os.getenv("ENCOURAGEMENT_PATH", "encouragement.json"))

_RUNNERS: Dict[str, SessionRunner] = {}
_RUNNERS_LOCK = threading.Lock()

_ROUND_LOGGER = logging.getLogger("trainer.rounds")
if not _ROUND_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(asctime)s %(name)s %(message)s"))
    _ROUND_LOGGER.addHandler(_handler)
_ROUND_LOGGER.setLevel(logging.DEBUG if get_env_bool("ROUND_DEBUG") else logging.INFO)
_ROUND_LOGGER.propagate = False

EMPTY_ROUND_MESSAGE = "Nothing to practice for this subject yet."
# completed runners kept in memory so their summary stays readable
FINISHED_RUNNER_LIMIT = 200


# ---------- Helpers ----------
def _round_size() -> int:
    return max(1, get_env_int("ROUND_SIZE", 10))


def _mastered_policy() -> MasteredPolicy:
    try:
        return MasteredPolicy.parse(os.getenv("MASTERED_POLICY", "exclude"))
    except ValueError:
        logger.warning("Unknown MASTERED_POLICY %r; excluding mastered questions", os.getenv("MASTERED_POLICY"))
        return MasteredPolicy.EXCLUDE


def _seed_learners() -> None:
    for user_id, name in get_learner_roster():
        db.ensure_learner(user_id, name)


def _sync_question_bank() -> None:
    path = Path(os.getenv("QUESTION_BANK_PATH", "questions.json"))
    if not path.exists():
        return
    try:
        bank = QuestionBank(path, auto_sync=True)
    except (OSError, ValueError, ItemValidationError, sqlite3.Error):
        logger.exception("Failed to sync question bank from %s", path)
        return
    logger.info("Synced %d questions from %s (%d rejected)", len(bank.questions), path, len(bank.rejected))


def _redirect(detail: str, target: str) -> HTTPException:
    return HTTPException(status_code=400, detail=detail, headers={"X-Redirect": target})


def _storage_unavailable(exc: PersistenceError) -> HTTPException:
    return HTTPException(
        status_code=503,
        detail={"message": str(exc), "operation": exc.operation, "retry": True},
    )


def _get_runner(session_id: str) -> SessionRunner:
    with _RUNNERS_LOCK:
        runner = _RUNNERS.get(session_id)
    if runner is None:
        raise HTTPException(status_code=404, detail="session not found or no longer active")
    return runner


def _drive(session_id: str, action: Callable[[SessionRunner], Any]) -> Dict[str, Any]:
    runner = _get_runner(session_id)
    try:
        action(runner)
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except PersistenceError as exc:
        raise _storage_unavailable(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    _retire_if_finished(runner)
    return runner.snapshot()


def _retire_if_finished(runner: SessionRunner) -> None:
    if not runner.finalized:
        return
    with _RUNNERS_LOCK:
        if _RUNNERS.get(runner.session_id) is not runner:
            return
        # re-insert so the registry stays ordered by completion time
        _RUNNERS[runner.session_id] = _RUNNERS.pop(runner.session_id)
        finished = [sid for sid, other in _RUNNERS.items() if other.finalized]
        stale = finished[: max(0, len(finished) - FINISHED_RUNNER_LIMIT)]
        for sid in stale:
            _RUNNERS.pop(sid, None)
    if stale:
        logger.info("Released %d completed session(s) from memory", len(stale))


def _evict_user_runners(user_id: str) -> None:
    with _RUNNERS_LOCK:
        stale = [sid for sid, runner in _RUNNERS.items() if runner.user_id == user_id]
        for sid in stale:
            _RUNNERS.pop(sid, None)
    if stale:
        logger.info("Dropped %d earlier session(s) for %s", len(stale), user_id)


# ---------- Schemas ----------
class StartRoundBody(BaseModel):
    user_id: Optional[str] = None
    subject: Optional[str] = None
    user_name: Optional[str] = None
    debug: bool = False


class TFBody(BaseModel):
    response: bool


class FamiliarityBody(BaseModel):
    choice: Literal["familiar", "needs_practice", "mastered"]


# ---------- Routes ----------
@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/learners")
def list_learners():
    learners: Dict[str, Dict[str, Any]] = {
        user_id: {"user_id": user_id, "name": name} for user_id, name in get_learner_roster()
    }
    try:
        for row in db.list_learners():
            learners.setdefault(row["user_id"], {"user_id": row["user_id"], "name": row.get("name") or row["user_id"]})
    except sqlite3.Error:
        logger.warning("Failed to list stored learners; returning configured roster only", exc_info=True)
    return {"learners": list(learners.values())}


@app.get("/subjects")
def list_subjects():
    subjects: List[str] = get_env_list("TRAINER_SUBJECTS")
    try:
        for subject in db.list_subjects():
            if subject not in subjects:
                subjects.append(subject)
    except sqlite3.Error:
        logger.warning("Failed to list stored subjects; returning configured subjects only", exc_info=True)
    return {"subjects": subjects}


@app.post("/rounds/start")
def start_round(body: StartRoundBody):
    user_id = (body.user_id or "").strip()
    subject = (body.subject or "").strip()
    if not user_id:
        raise _redirect("user_id required", "/learners")
    if not subject:
        raise _redirect("subject required", "/subjects")

    try:
        catalog = STORE.load_catalog(subject, limit=get_env_int("QUESTION_FETCH_LIMIT", 800))
    except sqlite3.Error as exc:
        logger.exception("Failed to load questions for subject %s", subject)
        raise HTTPException(
            status_code=503,
            detail={"message": "question catalogue unavailable", "operation": "load_catalog", "retry": True},
        ) from exc

    stats_available = True
    try:
        stats_docs = STORE.load_stats(user_id, subject, limit=get_env_int("STATS_FETCH_LIMIT", 2000))
    except sqlite3.Error:
        logger.exception("Failed to load stats for %s/%s; building an unweighted round", user_id, subject)
        stats_docs = []
        stats_available = False
    stats_index = StatsIndex.from_documents(stats_docs)

    builder = RoundBuilder(round_size=_round_size(), mastered_policy=_mastered_policy())
    round_ = builder.build(catalog, stats_index, subject)
    if round_.is_empty:
        return {"status": "empty", "user_id": user_id, "subject": subject, "message": EMPTY_ROUND_MESSAGE}

    try:
        db.ensure_learner(user_id, body.user_name)
    except sqlite3.Error:
        logger.warning("Failed to register learner %s", user_id, exc_info=True)

    runner = SessionRunner(
        round_,
        user_id=user_id,
        user_name=body.user_name,
        store=STORE,
        encouragement=ENCOURAGEMENT,
    )
    try:
        runner.start()
    except PersistenceError as exc:
        raise _storage_unavailable(exc) from exc

    _evict_user_runners(user_id)
    with _RUNNERS_LOCK:
        _RUNNERS[runner.session_id] = runner

    snapshot = runner.snapshot()
    payload: Dict[str, Any] = {
        **snapshot,
        "status": "started",
        "session_status": snapshot["status"],
        "stats_available": stats_available,
    }
    if body.debug:
        payload["round"] = builder.describe(round_, stats_index)
    return payload


@app.get("/sessions/{session_id}")
def get_session_state(session_id: str):
    return _get_runner(session_id).snapshot()


@app.post("/sessions/{session_id}/tf")
def answer_true_false(session_id: str, body: TFBody):
    return _drive(session_id, lambda runner: runner.answer_tf(body.response))


@app.post("/sessions/{session_id}/reveal")
def reveal_card(session_id: str):
    return _drive(session_id, lambda runner: runner.reveal())


@app.post("/sessions/{session_id}/familiarity")
def choose_familiarity(session_id: str, body: FamiliarityBody):
    return _drive(session_id, lambda runner: runner.choose_familiarity(body.choice))


@app.post("/sessions/{session_id}/finalize")
def finalize_session(session_id: str):
    runner = _get_runner(session_id)
    try:
        finalized = runner.finalize()
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if not finalized:
        raise HTTPException(
            status_code=503,
            detail={"message": "session finalization failed", "operation": "complete_session", "retry": True},
        )
    _retire_if_finished(runner)
    return runner.snapshot()


@app.get("/sessions/{session_id}/summary")
def get_summary(session_id: str):
    runner = _get_runner(session_id)
    if runner.phase is not Phase.SUMMARY or runner.summary is None:
        raise HTTPException(status_code=409, detail="round is still in progress")
    return {"session_id": session_id, "finalized": runner.finalized, **runner.summary.as_dict()}


@app.post("/sessions/{session_id}/abandon")
def abandon_session(session_id: str):
    with _RUNNERS_LOCK:
        runner = _RUNNERS.pop(session_id, None)
    if runner is None:
        raise HTTPException(status_code=404, detail="session not found or no longer active")
    logger.info("Session %s abandoned at question %d/%d", session_id, runner.index + 1, len(runner.round))
    return {"status": "abandoned", "session_id": session_id, "session_status": runner.session.status}


@app.get("/learners/{user_id}/stats")
def learner_stats(user_id: str, subject: Optional[str] = None):
    try:
        docs = db.list_user_stats(user_id, subject, limit=get_env_int("STATS_FETCH_LIMIT", 2000))
    except sqlite3.Error as exc:
        logger.exception("Failed to load stats for %s", user_id)
        raise HTTPException(status_code=503, detail="stats unavailable") from exc
    index = StatsIndex.from_documents(docs)
    return {"user_id": user_id, "subject": subject, "stats": [record.model_dump(mode="json") for record in index]}
