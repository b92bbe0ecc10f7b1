from __future__ import annotations

from pathlib import Path

import pytest

from paperseal.scopes import ScopeRef
from paperseal.store import InMemoryCounterStore
from paperseal.store_backends import SqliteCounterStore, create_counter_store_from_env


def _paper_row(paper_id: str, *, target: int = 2) -> dict:
    return {
        "paper_id": paper_id,
        "institute_id": "inst_store",
        "title": "Store paper",
        "has_sections": False,
        "target_count": target,
        "selected_count": 0,
        "status": "draft",
        "artifact_url": None,
        "answer_key_url": None,
        "finalized_at": None,
        "finalize_attempt_id": None,
        "created_at": "2026-01-01T00:00:00+00:00",
        "updated_at": "2026-01-01T00:00:00+00:00",
    }


def _question_row(question_id: str, paper_id: str, order: int) -> dict:
    return {
        "question_id": question_id,
        "paper_id": paper_id,
        "section_id": None,
        "question_order": order,
        "is_selected": False,
        "content": {"question_text": f"q{order}", "options": ["a", "b"]},
        "created_at": "2026-01-01T00:00:00+00:00",
        "updated_at": "2026-01-01T00:00:00+00:00",
    }


@pytest.fixture(params=["memory", "sqlite"])
def counter_store(request, tmp_path: Path):
    if request.param == "sqlite":
        return SqliteCounterStore(str(tmp_path / "counter.sqlite3"))
    return InMemoryCounterStore()


def _seed(counter_store, paper_id: str = "ppr_store", *, target: int = 2, questions: int = 3) -> ScopeRef:
    def _op(tx):
        tx.insert_paper(_paper_row(paper_id, target=target))
        for order in range(1, questions + 1):
            tx.insert_question(_question_row(f"q_{paper_id}_{order}", paper_id, order))

    counter_store.run_in_tx(fn=_op)
    return ScopeRef.for_paper(paper_id)


def test_increment_stops_at_target(counter_store):
    scope = _seed(counter_store, target=2)

    results = [counter_store.run_in_tx(fn=lambda tx: tx.increment_selected(scope)) for _ in range(3)]

    assert results == [True, True, False]
    paper = counter_store.run_in_tx(fn=lambda tx: tx.get_paper(scope.scope_id))
    assert paper["selected_count"] == 2


def test_decrement_never_goes_below_zero(counter_store):
    scope = _seed(counter_store)

    assert counter_store.run_in_tx(fn=lambda tx: tx.decrement_selected(scope)) is False
    paper = counter_store.run_in_tx(fn=lambda tx: tx.get_paper(scope.scope_id))
    assert paper["selected_count"] == 0


def test_failed_transaction_rolls_back_every_write(counter_store):
    scope = _seed(counter_store)

    def _op(tx):
        tx.increment_selected(scope)
        tx.update_question("q_ppr_store_1", changes={"is_selected": True})
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        counter_store.run_in_tx(fn=_op)

    paper = counter_store.run_in_tx(fn=lambda tx: tx.get_paper(scope.scope_id))
    question = counter_store.run_in_tx(fn=lambda tx: tx.get_question("q_ppr_store_1"))
    assert paper["selected_count"] == 0
    assert question["is_selected"] is False


def test_update_with_expect_is_compare_and_set(counter_store):
    scope = _seed(counter_store)

    applied = counter_store.run_in_tx(
        fn=lambda tx: tx.update_paper(scope.scope_id, changes={"status": "review"}, expect={"status": "draft"})
    )
    stale = counter_store.run_in_tx(
        fn=lambda tx: tx.update_paper(scope.scope_id, changes={"status": "finalized"}, expect={"status": "draft"})
    )
    null_match = counter_store.run_in_tx(
        fn=lambda tx: tx.update_paper(
            scope.scope_id,
            changes={"artifact_url": "fake://a"},
            expect={"status": "review", "artifact_url": None},
        )
    )

    assert applied is True
    assert stale is False
    assert null_match is True
    paper = counter_store.run_in_tx(fn=lambda tx: tx.get_paper(scope.scope_id))
    assert paper["status"] == "review"
    assert paper["artifact_url"] == "fake://a"


def test_update_rejects_unknown_columns(counter_store):
    scope = _seed(counter_store)

    with pytest.raises(ValueError, match="selected_count"):
        counter_store.run_in_tx(fn=lambda tx: tx.update_paper(scope.scope_id, changes={"selected_count": 9}))


def test_set_target_refuses_to_drop_below_selected(counter_store):
    scope = _seed(counter_store, target=3)
    counter_store.run_in_tx(fn=lambda tx: tx.increment_selected(scope))
    counter_store.run_in_tx(fn=lambda tx: tx.increment_selected(scope))

    assert counter_store.run_in_tx(fn=lambda tx: tx.set_target(scope, target=1)) is False
    assert counter_store.run_in_tx(fn=lambda tx: tx.set_target(scope, target=2)) is True


def test_count_selected_flags_and_content_round_trip(counter_store):
    scope = _seed(counter_store)
    counter_store.run_in_tx(fn=lambda tx: tx.update_question("q_ppr_store_2", changes={"is_selected": True}))

    assert counter_store.run_in_tx(fn=lambda tx: tx.count_selected_flags(scope)) == 1
    questions = counter_store.run_in_tx(fn=lambda tx: tx.list_scope_questions(scope))
    assert [q["question_id"] for q in questions] == ["q_ppr_store_1", "q_ppr_store_2", "q_ppr_store_3"]
    assert questions[0]["content"] == {"question_text": "q1", "options": ["a", "b"]}


def test_reset_clears_all_tables(counter_store):
    _seed(counter_store)
    counter_store.reset()
    assert counter_store.run_in_tx(fn=lambda tx: tx.list_papers()) == []


def test_sqlite_store_persists_across_instances(tmp_path: Path):
    db_path = tmp_path / "persist.sqlite3"
    first = SqliteCounterStore(str(db_path))
    scope = _seed(first)
    first.run_in_tx(fn=lambda tx: tx.increment_selected(scope))

    second = SqliteCounterStore(str(db_path))
    paper = second.run_in_tx(fn=lambda tx: tx.get_paper(scope.scope_id))

    assert paper["selected_count"] == 1
    assert paper["has_sections"] is False


def test_store_factory_defaults_to_in_memory(monkeypatch):
    monkeypatch.delenv("PAPERSEAL_STORE_BACKEND", raising=False)
    assert isinstance(create_counter_store_from_env(), InMemoryCounterStore)


def test_store_factory_builds_sqlite(tmp_path: Path):
    store = create_counter_store_from_env(
        {
            "PAPERSEAL_STORE_BACKEND": "sqlite",
            "PAPERSEAL_STORE_SQLITE_PATH": str(tmp_path / "factory.sqlite3"),
        }
    )
    assert isinstance(store, SqliteCounterStore)


def test_store_factory_requires_dsn_for_postgres():
    with pytest.raises(ValueError, match="POSTGRES_DSN"):
        create_counter_store_from_env({"PAPERSEAL_STORE_BACKEND": "postgres"})


def test_store_factory_rejects_non_postgres_when_true_stack_required():
    with pytest.raises(RuntimeError, match="postgres"):
        create_counter_store_from_env({"PAPERSEAL_REQUIRE_TRUESTACK": "true", "PAPERSEAL_STORE_BACKEND": "sqlite"})
