from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor

from conftest import Seeder

from paperseal.errors import ApiError
from paperseal.scopes import ScopeRef


def _race(calls, *, workers: int) -> list[object]:
    barrier = threading.Barrier(workers)

    def _run(call):
        barrier.wait()
        try:
            return call()
        except ApiError as exc:
            return exc.code

    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(_run, calls))


def _stored_and_flagged(svc, scope: ScopeRef) -> tuple[int, int]:
    def _op(tx):
        row = tx.get_section(scope.scope_id) if scope.kind == "section" else tx.get_paper(scope.scope_id)
        return int(row["selected_count"]), tx.count_selected_flags(scope)

    return svc.counter_store.run_in_tx(fn=_op)


def test_concurrent_toggles_never_exceed_target(backend_service):
    seed = Seeder(backend_service)
    paper_id, question_ids = seed.flat(target=3, questions=10)

    outcomes = _race(
        [
            (lambda qid=qid: backend_service.toggle_selection(question_id=qid, desired_selected=True, institute_id="inst_a"))
            for qid in question_ids
        ],
        workers=len(question_ids),
    )

    accepted = [item for item in outcomes if isinstance(item, dict)]
    rejected = [item for item in outcomes if item == "SELECTION_CAPACITY_EXCEEDED"]
    assert len(accepted) == 3
    assert len(rejected) == 7
    assert _stored_and_flagged(backend_service, ScopeRef.for_paper(paper_id)) == (3, 3)


def test_concurrent_toggles_on_one_section_respect_its_target(backend_service):
    seed = Seeder(backend_service)
    paper_id, layout = seed.sectioned(sections=((2, 6), (1, 2)))
    section_id, question_ids = layout[0]

    outcomes = _race(
        [
            (lambda qid=qid: backend_service.toggle_selection(question_id=qid, desired_selected=True, institute_id="inst_a"))
            for qid in question_ids
        ],
        workers=len(question_ids),
    )

    assert sum(1 for item in outcomes if isinstance(item, dict)) == 2
    scope = ScopeRef.for_section(section_id=section_id, paper_id=paper_id)
    assert _stored_and_flagged(backend_service, scope) == (2, 2)


def test_auto_select_racing_manual_toggles_stays_consistent(backend_service):
    seed = Seeder(backend_service)
    paper_id, question_ids = seed.flat(target=5, questions=12)

    calls = [
        (lambda qid=qid: backend_service.toggle_selection(question_id=qid, desired_selected=True, institute_id="inst_a"))
        for qid in question_ids[:6]
    ]
    calls.append(lambda: backend_service.auto_select(paper_id=paper_id, section_id=None, institute_id="inst_a"))
    _race(calls, workers=len(calls))

    assert _stored_and_flagged(backend_service, ScopeRef.for_paper(paper_id)) == (5, 5)


def test_concurrent_finalize_generates_one_artifact(backend_service, fake_generator):
    seed = Seeder(backend_service)
    paper_id, question_ids = seed.flat(target=2, questions=3)
    seed.select(question_ids[:2])
    fake_generator.delay_s = 0.05

    outcomes = _race(
        [lambda: backend_service.finalize(paper_id=paper_id, section_id=None, institute_id="inst_a")] * 4,
        workers=4,
    )

    results = [item for item in outcomes if isinstance(item, dict)]
    committed = [item for item in results if item["regenerated"]]
    assert len(committed) <= 1
    urls = {item["artifact_url"] for item in results if item["artifact_url"]}
    assert len(urls) <= 1
    paper = backend_service.counter_store.run_in_tx(fn=lambda tx: tx.get_paper(paper_id))
    assert paper["status"] == "finalized"


def test_failed_resume_keeps_artifact_committed_by_first_finalize(memory_service, seed, fake_generator):
    paper_id, question_ids = seed.flat(target=1, questions=2)
    seed.select(question_ids[:1])
    first_rendering = threading.Event()
    resume_rendering = threading.Event()
    renders: list[str] = []

    def _stored_paper():
        return memory_service.counter_store.run_in_tx(fn=lambda tx: tx.get_paper(paper_id))

    def _interleave(artifact_request):
        renders.append(artifact_request.attempt_id)
        if len(renders) == 1:
            first_rendering.set()
            resume_rendering.wait(timeout=1.5)
            return
        resume_rendering.set()
        deadline = time.monotonic() + 1.5
        while _stored_paper()["artifact_url"] is None and time.monotonic() < deadline:
            time.sleep(0.01)
        raise RuntimeError("renderer crashed")

    fake_generator.before_return = _interleave

    with ThreadPoolExecutor(max_workers=1) as pool:
        first = pool.submit(memory_service.finalize, paper_id=paper_id, section_id=None, institute_id="inst_a")
        assert first_rendering.wait(timeout=2.0)
        resumed = memory_service.finalize(paper_id=paper_id, section_id=None, institute_id="inst_a")
        original = first.result(timeout=5.0)

    assert renders[0] == renders[1]
    assert original["regenerated"] is True
    assert resumed["regenerated"] is False
    assert resumed["artifact_url"] == original["artifact_url"]
    paper = _stored_paper()
    assert paper["status"] == "finalized"
    assert paper["artifact_url"] == original["artifact_url"]
    assert original["artifact_url"] not in fake_generator.discarded
