from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest
from conftest import FakeArtifactGenerator, FlakyCounterStore, Seeder, make_config

from paperseal.artifacts import ArtifactRequest
from paperseal.errors import ApiError
from paperseal.finalization import FinalizationSaga
from paperseal.lifecycle import ScopeLifecycle
from paperseal.scopes import ScopeRef
from paperseal.service import PaperSealService
from paperseal.store import InMemoryCounterStore


def _paper(svc, paper_id: str) -> dict:
    return svc.counter_store.run_in_tx(fn=lambda tx: tx.get_paper(paper_id))


def _section(svc, section_id: str) -> dict:
    return svc.counter_store.run_in_tx(fn=lambda tx: tx.get_section(section_id))


def test_finalize_full_paper_commits_artifact(backend_service, fake_generator):
    seed = Seeder(backend_service)
    paper_id, question_ids = seed.flat(target=3, questions=5)
    seed.select(question_ids[:3])

    result = backend_service.finalize(paper_id=paper_id, section_id=None, institute_id="inst_a")

    assert result["status"] == "finalized"
    assert result["regenerated"] is True
    assert result["artifact_url"].startswith("fake://question_paper/")
    paper = _paper(backend_service, paper_id)
    assert paper["status"] == "finalized"
    assert paper["artifact_url"] == result["artifact_url"]
    assert paper["finalize_attempt_id"] == result["attempt_id"]
    request = fake_generator.requests[0]
    assert [q["question_id"] for q in request.questions] == question_ids[:3]


def test_incomplete_selection_blocks_finalize(memory_service, seed, fake_generator):
    paper_id, question_ids = seed.flat(target=3)
    seed.select(question_ids[:2])

    with pytest.raises(ApiError) as exc:
        memory_service.finalize(paper_id=paper_id, section_id=None, institute_id="inst_a")

    assert exc.value.code == "SELECTION_INCOMPLETE"
    assert exc.value.http_status == 409
    assert "2 selected" in exc.value.message
    assert _paper(memory_service, paper_id)["status"] == "review"
    assert fake_generator.requests == []


def test_finalize_again_returns_existing_artifact(memory_service, seed, fake_generator):
    paper_id, question_ids = seed.flat(target=2)
    seed.select(question_ids[:2])
    first = memory_service.finalize(paper_id=paper_id, section_id=None, institute_id="inst_a")

    second = memory_service.finalize(paper_id=paper_id, section_id=None, institute_id="inst_a")

    assert second["artifact_url"] == first["artifact_url"]
    assert second["regenerated"] is False
    assert len(fake_generator.requests) == 1


def test_toggling_finalized_paper_reverts_and_discards(memory_service, seed, fake_generator):
    paper_id, question_ids = seed.flat(target=2)
    seed.select(question_ids[:2])
    finalized = memory_service.finalize(paper_id=paper_id, section_id=None, institute_id="inst_a")

    result = memory_service.toggle_selection(question_id=question_ids[0], desired_selected=False, institute_id="inst_a")

    assert result["status_reverted"] is True
    paper = _paper(memory_service, paper_id)
    assert paper["status"] == "review"
    assert paper["artifact_url"] is None
    assert paper["finalize_attempt_id"] is None
    assert fake_generator.discarded == [finalized["artifact_url"]]


def test_content_edit_on_finalized_paper_reverts(memory_service, seed, fake_generator):
    paper_id, question_ids = seed.flat(target=1)
    seed.select(question_ids[:1])
    memory_service.finalize(paper_id=paper_id, section_id=None, institute_id="inst_a")

    result = memory_service.edit_question_content(
        question_id=question_ids[0],
        changes={"explanation": "Because optics."},
        institute_id="inst_a",
    )

    assert result["status_reverted"] is True
    assert _paper(memory_service, paper_id)["status"] == "review"
    assert len(fake_generator.discarded) == 1


def test_generation_failure_compensates_seal(memory_service, seed, fake_generator):
    paper_id, question_ids = seed.flat(target=2)
    seed.select(question_ids[:2])
    fake_generator.fail_next = 1

    with pytest.raises(ApiError) as exc:
        memory_service.finalize(paper_id=paper_id, section_id=None, institute_id="inst_a")

    assert exc.value.code == "ARTIFACT_GENERATION_FAILED"
    assert exc.value.http_status == 502
    assert exc.value.retryable is True
    assert exc.value.details["compensated"] is True
    assert "Paper not finalized" in exc.value.message
    paper = _paper(memory_service, paper_id)
    assert paper["status"] == "review"
    assert paper["finalize_attempt_id"] is None
    assert paper["selected_count"] == 2

    retry = memory_service.finalize(paper_id=paper_id, section_id=None, institute_id="inst_a")
    assert retry["status"] == "finalized"


def test_generation_timeout_compensates_and_discards_late_artifact():
    generator = FakeArtifactGenerator()
    generator.delay_s = 0.3
    svc = PaperSealService(
        counter_store=InMemoryCounterStore(),
        artifact_generator=generator,
        config=make_config(artifact_timeout_s=0.05),
    )
    local_seed = Seeder(svc)
    paper_id, question_ids = local_seed.flat(target=1)
    local_seed.select(question_ids[:1])

    with pytest.raises(ApiError) as exc:
        svc.finalize(paper_id=paper_id, section_id=None, institute_id="inst_a")

    assert exc.value.code == "ARTIFACT_GENERATION_FAILED"
    assert _paper(svc, paper_id)["status"] == "review"
    deadline = time.monotonic() + 3.0
    while not generator.discarded and time.monotonic() < deadline:
        time.sleep(0.02)
    assert len(generator.discarded) == 1
    assert generator.discarded[0].startswith("fake://question_paper/")
    svc.saga.shutdown()


def test_timed_out_render_waiting_for_a_worker_never_runs(fake_generator):
    release = threading.Event()
    fake_generator.before_return = lambda _request: release.wait(timeout=3.0)
    saga = FinalizationSaga(
        counter_store=InMemoryCounterStore(),
        lifecycle=ScopeLifecycle(),
        artifact_generator=fake_generator,
        timeout_s=0.05,
    )
    saga._executor.shutdown()
    saga._executor = ThreadPoolExecutor(max_workers=1)
    paper = {"paper_id": "ppr_x", "institute_id": "inst_a"}
    busy = ArtifactRequest(kind="question_paper", attempt_id="fin_busy", paper=paper)
    queued = ArtifactRequest(kind="question_paper", attempt_id="fin_queued", paper=paper)

    with pytest.raises(TimeoutError):
        saga._generate_with_timeout(busy)
    with pytest.raises(TimeoutError):
        saga._generate_with_timeout(queued)
    release.set()
    saga._executor.shutdown(wait=True)

    assert [request.attempt_id for request in fake_generator.requests] == ["fin_busy"]
    assert fake_generator.discarded == ["fake://question_paper/fin_busy/1"]


def test_edit_during_generation_supersedes_commit(memory_service, seed, fake_generator):
    paper_id, question_ids = seed.flat(target=2, questions=3)
    seed.select(question_ids[:2])

    def _edit_while_rendering(_request):
        fake_generator.before_return = None
        memory_service.toggle_selection(question_id=question_ids[0], desired_selected=False, institute_id="inst_a")

    fake_generator.before_return = _edit_while_rendering

    with pytest.raises(ApiError) as exc:
        memory_service.finalize(paper_id=paper_id, section_id=None, institute_id="inst_a")

    assert exc.value.code == "FINALIZE_SUPERSEDED"
    assert exc.value.http_status == 409
    paper = _paper(memory_service, paper_id)
    assert paper["status"] == "review"
    assert paper["artifact_url"] is None
    assert paper["selected_count"] == 1
    assert len(fake_generator.discarded) == 1


def test_compensation_retries_with_doubling_backoff(fake_generator):
    counter_store = FlakyCounterStore(InMemoryCounterStore())
    svc = PaperSealService(counter_store=counter_store, artifact_generator=fake_generator, config=make_config())
    local_seed = Seeder(svc)
    paper_id, question_ids = local_seed.flat(target=1)
    local_seed.select(question_ids[:1])
    sleeps: list[float] = []
    saga = FinalizationSaga(
        counter_store=counter_store,
        lifecycle=ScopeLifecycle(),
        artifact_generator=fake_generator,
        compensation_max_attempts=3,
        compensation_backoff_ms=100,
        sleep=sleeps.append,
    )

    def _break_store(_request):
        counter_store.failures_left = 2

    fake_generator.fail_next = 1
    fake_generator.before_return = _break_store

    with pytest.raises(ApiError) as exc:
        saga.finalize(scope=ScopeRef.for_paper(paper_id))

    assert exc.value.details["compensated"] is True
    assert sleeps == [0.1, 0.2]
    assert _paper(svc, paper_id)["status"] == "review"
    saga.shutdown()
    svc.saga.shutdown()


def test_exhausted_compensation_leaves_paper_for_resume(fake_generator):
    counter_store = FlakyCounterStore(InMemoryCounterStore())
    svc = PaperSealService(counter_store=counter_store, artifact_generator=fake_generator, config=make_config())
    local_seed = Seeder(svc)
    paper_id, question_ids = local_seed.flat(target=1)
    local_seed.select(question_ids[:1])

    def _break_store(_request):
        fake_generator.before_return = None
        counter_store.failures_left = 3

    fake_generator.fail_next = 1
    fake_generator.before_return = _break_store

    with pytest.raises(ApiError) as exc:
        svc.finalize(paper_id=paper_id, section_id=None, institute_id="inst_a")

    assert exc.value.details["compensated"] is False
    stuck = _paper(svc, paper_id)
    assert stuck["status"] == "finalized"
    assert stuck["artifact_url"] is None

    resumed = svc.finalize(paper_id=paper_id, section_id=None, institute_id="inst_a")

    assert resumed["regenerated"] is True
    assert resumed["attempt_id"] == stuck["finalize_attempt_id"]
    assert _paper(svc, paper_id)["artifact_url"] == resumed["artifact_url"]
    svc.saga.shutdown()


def test_sectioned_paper_finalizes_after_last_section(backend_service, fake_generator):
    seed = Seeder(backend_service)
    paper_id, layout = seed.sectioned(sections=((2, 3), (1, 2)))
    (first_id, first_questions), (second_id, second_questions) = layout
    seed.select(first_questions[:2])

    partial = backend_service.finalize(paper_id=paper_id, section_id=first_id, institute_id="inst_a")

    assert partial["artifact_url"] is None
    assert [item["section_id"] for item in partial["awaiting_sections"]] == [second_id]
    assert _section(backend_service, first_id)["status"] == "finalized"
    assert _paper(backend_service, paper_id)["status"] == "review"
    assert fake_generator.requests == []

    seed.select(second_questions[:1])
    done = backend_service.finalize(paper_id=paper_id, section_id=second_id, institute_id="inst_a")

    assert done["regenerated"] is True
    assert done["artifact_url"].startswith("fake://question_paper/")
    assert _paper(backend_service, paper_id)["status"] == "finalized"
    request = fake_generator.requests[0]
    assert [q["question_id"] for q in request.questions] == [*first_questions[:2], second_questions[0]]

    again = backend_service.finalize(paper_id=paper_id, section_id=None, institute_id="inst_a")
    assert again["artifact_url"] == done["artifact_url"]
    assert again["regenerated"] is False


def test_sectioned_paper_lists_unfinalized_sections(memory_service, seed):
    paper_id, layout = seed.sectioned(sections=((1, 2), (1, 2)))
    seed.select(layout[0][1][:1])

    with pytest.raises(ApiError) as exc:
        memory_service.finalize(paper_id=paper_id, section_id=None, institute_id="inst_a")

    assert exc.value.code == "SELECTION_INCOMPLETE"
    unfinalized = exc.value.details["unfinalized_sections"]
    assert [item["section_id"] for item in unfinalized] == [layout[0][0], layout[1][0]]


def test_failed_last_section_only_unseals_what_it_sealed(memory_service, seed, fake_generator):
    paper_id, layout = seed.sectioned(sections=((1, 2), (1, 2)))
    (first_id, first_questions), (second_id, second_questions) = layout
    seed.select(first_questions[:1])
    memory_service.finalize(paper_id=paper_id, section_id=first_id, institute_id="inst_a")
    seed.select(second_questions[:1])
    fake_generator.fail_next = 1

    with pytest.raises(ApiError):
        memory_service.finalize(paper_id=paper_id, section_id=second_id, institute_id="inst_a")

    assert _section(memory_service, first_id)["status"] == "finalized"
    assert _section(memory_service, second_id)["status"] == "in_review"
    assert _paper(memory_service, paper_id)["status"] == "review"


def test_editing_finalized_section_reverts_section_and_paper(memory_service, seed, fake_generator):
    paper_id, layout = seed.sectioned(sections=((1, 2), (1, 2)))
    (first_id, first_questions), (second_id, second_questions) = layout
    seed.select(first_questions[:1])
    memory_service.finalize(paper_id=paper_id, section_id=first_id, institute_id="inst_a")
    seed.select(second_questions[:1])
    done = memory_service.finalize(paper_id=paper_id, section_id=second_id, institute_id="inst_a")

    memory_service.edit_question_content(
        question_id=first_questions[0],
        changes={"question_text": "Reworded"},
        institute_id="inst_a",
    )

    assert _section(memory_service, first_id)["status"] == "in_review"
    assert _section(memory_service, second_id)["status"] == "finalized"
    assert _paper(memory_service, paper_id)["status"] == "review"
    assert fake_generator.discarded == [done["artifact_url"]]


def test_target_is_locked_while_finalized(memory_service, seed):
    paper_id, question_ids = seed.flat(target=1)
    seed.select(question_ids[:1])
    memory_service.finalize(paper_id=paper_id, section_id=None, institute_id="inst_a")

    with pytest.raises(ApiError) as exc:
        memory_service.update_scope_target(paper_id=paper_id, section_id=None, institute_id="inst_a", target=2)

    assert exc.value.code == "SCOPE_TARGET_LOCKED"


def test_reopen_invalidates_artifacts(memory_service, seed, fake_generator):
    paper_id, question_ids = seed.flat(target=1)
    seed.select(question_ids[:1])
    memory_service.finalize(paper_id=paper_id, section_id=None, institute_id="inst_a")
    memory_service.generate_answer_key(paper_id=paper_id, institute_id="inst_a")

    reopened = memory_service.reopen(paper_id=paper_id, section_id=None, institute_id="inst_a")

    assert reopened["status"] == "review"
    assert reopened["invalidated_artifacts"] == 2
    assert len(fake_generator.discarded) == 2
    paper = _paper(memory_service, paper_id)
    assert paper["answer_key_url"] is None
    assert paper["selected_count"] == 1


def test_reopen_requires_finalized_scope(memory_service, seed):
    paper_id, _ = seed.flat()

    with pytest.raises(ApiError) as exc:
        memory_service.reopen(paper_id=paper_id, section_id=None, institute_id="inst_a")

    assert exc.value.code == "SCOPE_NOT_FINALIZED"


def test_answer_key_is_generated_once(memory_service, seed, fake_generator):
    paper_id, question_ids = seed.flat(target=1)
    seed.select(question_ids[:1])
    memory_service.finalize(paper_id=paper_id, section_id=None, institute_id="inst_a")

    first = memory_service.generate_answer_key(paper_id=paper_id, institute_id="inst_a")
    second = memory_service.generate_answer_key(paper_id=paper_id, institute_id="inst_a")

    assert first["regenerated"] is True
    assert first["answer_key_url"].startswith("fake://answer_key/")
    assert second == {**first, "regenerated": False}
    assert [r.kind for r in fake_generator.requests] == ["question_paper", "answer_key"]


def test_answer_key_requires_finalized_paper(memory_service, seed):
    paper_id, _ = seed.flat()

    with pytest.raises(ApiError) as exc:
        memory_service.generate_answer_key(paper_id=paper_id, institute_id="inst_a")

    assert exc.value.code == "SCOPE_NOT_FINALIZED"


def test_answer_key_failure_keeps_paper_finalized(memory_service, seed, fake_generator):
    paper_id, question_ids = seed.flat(target=1)
    seed.select(question_ids[:1])
    memory_service.finalize(paper_id=paper_id, section_id=None, institute_id="inst_a")
    fake_generator.fail_next = 1

    with pytest.raises(ApiError) as exc:
        memory_service.generate_answer_key(paper_id=paper_id, institute_id="inst_a")

    assert exc.value.code == "ARTIFACT_GENERATION_FAILED"
    assert exc.value.details["compensated"] is False
    assert _paper(memory_service, paper_id)["status"] == "finalized"


def test_fetch_artifact_hands_back_url_served_elsewhere(memory_service, seed, fake_generator):
    paper_id, question_ids = seed.flat(target=1)
    seed.select(question_ids[:1])
    done = memory_service.finalize(paper_id=paper_id, section_id=None, institute_id="inst_a")

    artifact = memory_service.fetch_artifact(paper_id=paper_id, kind="question_paper", institute_id="inst_a")

    assert artifact == {
        "paper_id": paper_id,
        "kind": "question_paper",
        "artifact_url": done["artifact_url"],
        "content": None,
    }
