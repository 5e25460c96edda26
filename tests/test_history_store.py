from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from promptrefiner.agents.types import PromptHistoryItem, QuestionKind, RefinementTurn
from promptrefiner.core.state.history import HistoryEntry, HistoryTurn
from promptrefiner.core.storage.history import SqlHistoryStore


@pytest.fixture
def sql_store() -> SqlHistoryStore:
    """
    Fixture to create a SqlHistoryStore backed by an in-memory SQLite database.

    Returns:
        SqlHistoryStore: The store instance.
    """
    return SqlHistoryStore(db_url="sqlite:///:memory:")


def _item(idea: str, minutes_ago: int = 0, turns: int = 0) -> PromptHistoryItem:
    stamp = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc) - timedelta(minutes=minutes_ago)
    return PromptHistoryItem(
        idea=idea,
        final_prompts=[f"{idea} prompt 1", f"{idea} prompt 2"],
        turns=[
            RefinementTurn(
                question_id=f"q{i + 1}",
                question=f"Question {i + 1}?",
                answer=f"Answer {i + 1}",
                kind=QuestionKind.CONSTRAINT,
                required=i == 0,
                round=i + 1,
                timestamp=stamp,
            )
            for i in range(turns)
        ],
        confidence=88,
        suggested_approach="detailed",
        timestamp=stamp,
    )


def test_empty_store_loads_nothing(sql_store: SqlHistoryStore) -> None:
    assert sql_store.load_history() == []


def test_round_trip_preserves_entry(sql_store: SqlHistoryStore) -> None:
    item = _item("api docs", turns=2)
    sql_store.save_history([item])

    (loaded,) = sql_store.load_history()
    assert loaded.id == item.id
    assert loaded.idea == "api docs"
    assert loaded.final_prompts == item.final_prompts
    assert loaded.confidence == 88
    assert loaded.suggested_approach == "detailed"
    assert loaded.timestamp == item.timestamp
    assert [t.question_id for t in loaded.turns] == ["q1", "q2"]
    assert loaded.turns[0].required is True
    assert loaded.turns[1].kind is QuestionKind.CONSTRAINT
    assert loaded.turns[1].id == item.turns[1].id


def test_load_orders_newest_first(sql_store: SqlHistoryStore) -> None:
    older = _item("older", minutes_ago=30)
    newer = _item("newer", minutes_ago=1)
    sql_store.save_history([older, newer])
    assert [h.idea for h in sql_store.load_history()] == ["newer", "older"]


def test_save_inserts_and_deletes_whole_entries(sql_store: SqlHistoryStore) -> None:
    first = _item("first", minutes_ago=10, turns=1)
    second = _item("second", minutes_ago=5)
    sql_store.save_history([first])
    sql_store.save_history([second, first])
    assert [h.idea for h in sql_store.load_history()] == ["second", "first"]

    sql_store.save_history([second])
    assert [h.idea for h in sql_store.load_history()] == ["second"]

    sql_store.save_history([])
    assert sql_store.load_history() == []


def test_existing_entries_are_not_rewritten(sql_store: SqlHistoryStore) -> None:
    item = _item("original")
    sql_store.save_history([item])
    item.idea = "mutated in memory"
    sql_store.save_history([item])
    assert sql_store.load_history()[0].idea == "original"


def test_turn_rows_are_removed_with_entry(sql_store: SqlHistoryStore) -> None:
    item = _item("with turns", turns=3)
    sql_store.save_history([item])
    sql_store.save_history([])
    with sql_store._session_scope() as s:
        assert s.query(HistoryEntry).count() == 0
        assert s.query(HistoryTurn).count() == 0


def test_file_database_creates_parent_dir(tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "history.db"
    store = SqlHistoryStore(db_url=f"sqlite:///{db_path}")
    store.save_history([_item("persisted")])
    assert db_path.exists()

    reopened = SqlHistoryStore(db_url=f"sqlite:///{db_path}")
    assert [h.idea for h in reopened.load_history()] == ["persisted"]


def test_default_url_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REFINER_HISTORY_DB", "sqlite:///:memory:")
    assert SqlHistoryStore().db_url == "sqlite:///:memory:"


def test_init_store_without_url_raises() -> None:
    store = SqlHistoryStore(db_url="sqlite:///:memory:")
    store.db_url = None
    with pytest.raises(RuntimeError):
        store.init_store()
