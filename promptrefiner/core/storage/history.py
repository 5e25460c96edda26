from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from loguru import logger
from sqlalchemy import select
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, selectinload

from promptrefiner.agents.types import PromptHistoryItem, QuestionKind, RefinementTurn
from promptrefiner.core.state.base import _make_session_maker
from promptrefiner.core.state.history import HistoryEntry, HistoryTurn
from promptrefiner.utils.env_cfg import load_path_env


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_naive_utc(value: datetime) -> datetime:
    return _as_utc(value).replace(tzinfo=None)


def _ensure_sqlite_dir(db_url: str) -> None:
    url = make_url(db_url)
    if url.get_backend_name() != "sqlite" or url.database in (None, "", ":memory:"):
        return
    Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)


@dataclass
class InMemoryHistoryStore:
    """
    Keeps history in process memory.
    """

    items: list[PromptHistoryItem] = field(default_factory=list)

    def load_history(self) -> list[PromptHistoryItem]:
        return list(self.items)

    def save_history(self, items: list[PromptHistoryItem]) -> None:
        self.items = list(items)


@dataclass
class SqlHistoryStore:
    """
    Persists completed refinements with SQLAlchemy.

    Entries are immutable once written: ``save_history`` inserts new entries
    and deletes removed ones, it never rewrites an existing entry.
    """

    db_url: str | None = None
    _SessionMaker: Any | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        """
        Post-initialization to resolve the database URL.
        """
        if self.db_url is None:
            self.db_url = load_path_env().history_db

    def init_store(self) -> None:
        """
        Create the engine, the tables and the session maker.

        Raises:
            RuntimeError: If no database URL is configured.
        """
        if self.db_url is None:
            logger.error("RuntimeError: History database URL is not configured.")
            raise RuntimeError("History database URL is not configured.")
        _ensure_sqlite_dir(self.db_url)
        self._SessionMaker = _make_session_maker(self.db_url)
        logger.debug("History store initialized at {}", self.db_url)

    @contextmanager
    def _session_scope(self) -> Iterator[Session]:
        """
        Provide a transactional scope around a series of operations.

        Yields:
            Iterator[Session]: A new database session.

        Raises:
            RuntimeError: If the SessionMaker is not initialized.
        """
        if self._SessionMaker is None:
            self.init_store()
        if self._SessionMaker is None:
            raise RuntimeError("SessionMaker is not initialized.")
        session = self._SessionMaker()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _to_item(entry: HistoryEntry) -> PromptHistoryItem:
        turns = [
            RefinementTurn(
                question_id=t.question_id,
                question=t.question,
                answer=t.answer,
                kind=QuestionKind.coerce(t.kind),
                required=bool(t.required),
                round=t.round,
                id=t.turn_id,
                timestamp=_as_utc(t.created_at),
            )
            for t in entry.turns
        ]
        return PromptHistoryItem(
            idea=entry.idea,
            final_prompts=list(entry.final_prompts or []),
            turns=turns,
            confidence=entry.confidence,
            suggested_approach=entry.suggested_approach,
            id=entry.id,
            timestamp=_as_utc(entry.created_at),
        )

    @staticmethod
    def _to_entry(item: PromptHistoryItem) -> HistoryEntry:
        entry = HistoryEntry(
            id=item.id,
            idea=item.idea,
            final_prompts=list(item.final_prompts),
            confidence=item.confidence,
            suggested_approach=item.suggested_approach,
            created_at=_to_naive_utc(item.timestamp),
        )
        for idx, turn in enumerate(item.turns):
            entry.turns.append(
                HistoryTurn(
                    idx=idx,
                    turn_id=turn.id,
                    question_id=turn.question_id,
                    question=turn.question,
                    answer=turn.answer,
                    kind=turn.kind.value,
                    required=turn.required,
                    round=turn.round,
                    created_at=_to_naive_utc(turn.timestamp),
                )
            )
        return entry

    def load_history(self) -> list[PromptHistoryItem]:
        """
        Load every stored refinement.

        Returns:
            list[PromptHistoryItem]: Items ordered newest first.
        """
        with self._session_scope() as s:
            entries = (
                s.execute(
                    select(HistoryEntry)
                    .options(selectinload(HistoryEntry.turns))
                    .order_by(HistoryEntry.created_at.desc())
                )
                .scalars()
                .all()
            )
            return [self._to_item(e) for e in entries]

    def save_history(self, items: list[PromptHistoryItem]) -> None:
        """
        Make the stored history match the given items.

        Args:
            items (list[PromptHistoryItem]): The complete history.
        """
        wanted = {item.id: item for item in items}
        with self._session_scope() as s:
            existing = set(s.execute(select(HistoryEntry.id)).scalars().all())
            removed = existing - wanted.keys()
            for entry_id in removed:
                entry = s.get(HistoryEntry, entry_id)
                if entry is not None:
                    s.delete(entry)
            added = [item for item_id, item in wanted.items() if item_id not in existing]
            for item in added:
                s.add(self._to_entry(item))
        logger.debug(
            "History saved ({} added, {} removed, {} total)",
            len(added),
            len(removed),
            len(wanted),
        )
