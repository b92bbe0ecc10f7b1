import pathlib
import sys
import threading
import time
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from paperseal.artifacts import ArtifactGenerator
from paperseal.config import ServiceConfig
from paperseal.main import create_app
from paperseal.service import PaperSealService, service
from paperseal.store import InMemoryCounterStore
from paperseal.store_backends import SqliteCounterStore


def _issue_token(*, secret: str, institute_id: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": f"examiner_{institute_id}",
        "institute_id": institute_id,
        "exp": int((now + timedelta(minutes=30)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    return jwt.encode(payload, secret, algorithm="HS256")


class AuthenticatedClient:
    def __init__(self, client: TestClient, *, jwt_secret: str):
        self._client = client
        self._jwt_secret = jwt_secret

    def request(self, method: str, url: str, **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        if url.startswith("/api/v1/") and not url.startswith("/api/v1/internal/"):
            if "Authorization" not in headers:
                institute_id = headers.get("x-institute-id") or "institute_default"
                token = _issue_token(secret=self._jwt_secret, institute_id=str(institute_id))
                headers["Authorization"] = f"Bearer {token}"
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def put(self, url: str, **kwargs):
        return self.request("PUT", url, **kwargs)

    def patch(self, url: str, **kwargs):
        return self.request("PATCH", url, **kwargs)


class FakeArtifactGenerator(ArtifactGenerator):
    """Records every render; can fail, stall, or run a hook before returning."""

    backend_name = "fake"

    def __init__(self) -> None:
        self.requests = []
        self.discarded: list[str] = []
        self.fail_next = 0
        self.delay_s = 0.0
        self.before_return = None
        self._lock = threading.Lock()

    def generate(self, *, artifact_request) -> str:
        with self._lock:
            self.requests.append(artifact_request)
            number = len(self.requests)
            fail = self.fail_next > 0
            if fail:
                self.fail_next -= 1
        if self.delay_s:
            time.sleep(self.delay_s)
        if self.before_return is not None:
            self.before_return(artifact_request)
        if fail:
            raise RuntimeError("renderer unavailable")
        return f"fake://{artifact_request.kind}/{artifact_request.attempt_id}/{number}"

    def discard(self, *, artifact_url: str) -> bool:
        with self._lock:
            self.discarded.append(artifact_url)
        return True


class FlakyCounterStore:
    """Wraps a counter store and fails the next N transactions once armed."""

    def __init__(self, inner) -> None:
        self.inner = inner
        self.failures_left = 0
        self.backend_name = inner.backend_name

    def run_in_tx(self, *, fn):
        if self.failures_left > 0:
            self.failures_left -= 1
            raise ConnectionError("counter store unavailable")
        return self.inner.run_in_tx(fn=fn)

    def reset(self) -> None:
        self.inner.reset()


def make_config(**overrides) -> ServiceConfig:
    values = {
        "default_target_count": 30,
        "artifact_timeout_s": 2.0,
        "compensation_max_attempts": 3,
        "compensation_backoff_ms": 0,
        "autoselect_seed": 7,
        "reconcile_stale_after_s": 900,
    }
    values.update(overrides)
    return ServiceConfig(**values)


class Seeder:
    def __init__(self, svc: PaperSealService, *, institute_id: str = "inst_a") -> None:
        self.svc = svc
        self.institute_id = institute_id

    def flat(self, *, target: int = 3, questions: int = 5, contents=None) -> tuple[str, list[str]]:
        paper = self.svc.create_paper(institute_id=self.institute_id, title="Physics Mock", target_count=target)
        items = contents or [
            {
                "question_text": f"Question {i}",
                "options": ["alpha", "beta", "gamma", "delta"],
                "correct_answer": "alpha",
                "difficulty": "easy" if i % 2 else "hard",
            }
            for i in range(1, questions + 1)
        ]
        ingested = self.svc.ingest_questions(
            paper_id=paper["paper_id"],
            institute_id=self.institute_id,
            questions=[{"content": content} for content in items],
        )
        return paper["paper_id"], ingested["question_ids"]

    def sectioned(self, *, sections=((2, 3), (1, 2)), ready: bool = True) -> tuple[str, list[tuple[str, list[str]]]]:
        paper = self.svc.create_paper(
            institute_id=self.institute_id,
            title="Chemistry Final",
            sections=[
                {"section_name": f"Part {order}", "section_order": order, "question_count": target}
                for order, (target, _) in enumerate(sections, start=1)
            ],
        )
        paper_id = paper["paper_id"]
        layout = []
        for section, (_, count) in zip(paper["sections"], sections, strict=True):
            ingested = self.svc.ingest_questions(
                paper_id=paper_id,
                institute_id=self.institute_id,
                questions=[
                    {
                        "section_id": section["section_id"],
                        "content": {
                            "question_text": f"{section['section_name']} question {i}",
                            "correct_answer": "B",
                        },
                    }
                    for i in range(1, count + 1)
                ],
            )
            layout.append((section["section_id"], ingested["question_ids"]))
        if ready:
            self.svc.mark_generation_complete(paper_id=paper_id, institute_id=self.institute_id)
        return paper_id, layout

    def select(self, question_ids: list[str]) -> None:
        for question_id in question_ids:
            self.svc.toggle_selection(question_id=question_id, desired_selected=True, institute_id=self.institute_id)


@pytest.fixture(autouse=True)
def reset_service(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("PAPERSEAL_OBJECT_STORAGE_BACKEND", "local")
    monkeypatch.setenv("OBJECT_STORAGE_ROOT", str(tmp_path / "object_store"))
    monkeypatch.delenv("PAPERSEAL_ARTIFACT_BACKEND", raising=False)
    monkeypatch.setenv("JWT_SHARED_SECRET", "jwt_test_secret")
    monkeypatch.setenv("JWT_ISSUER", "test-issuer")
    monkeypatch.setenv("JWT_AUDIENCE", "test-audience")
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "institute_id,sub,exp")
    service.reset()
    yield


@pytest.fixture
def client() -> TestClient:
    app = create_app()
    base = TestClient(app)
    return AuthenticatedClient(base, jwt_secret="jwt_test_secret")


@pytest.fixture
def fake_generator() -> FakeArtifactGenerator:
    return FakeArtifactGenerator()


@pytest.fixture
def memory_service(fake_generator: FakeArtifactGenerator):
    svc = PaperSealService(
        counter_store=InMemoryCounterStore(),
        artifact_generator=fake_generator,
        config=make_config(),
    )
    yield svc
    svc.saga.shutdown()


@pytest.fixture(params=["memory", "sqlite"])
def backend_service(request, tmp_path: pathlib.Path, fake_generator: FakeArtifactGenerator):
    if request.param == "sqlite":
        counter_store = SqliteCounterStore(str(tmp_path / "paperseal.sqlite3"))
    else:
        counter_store = InMemoryCounterStore()
    svc = PaperSealService(counter_store=counter_store, artifact_generator=fake_generator, config=make_config())
    yield svc
    svc.saga.shutdown()


@pytest.fixture
def seed(memory_service: PaperSealService) -> Seeder:
    return Seeder(memory_service)
