from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from io import BytesIO
from typing import Any
from urllib import request

from reportlab.lib.enums import TA_CENTER, TA_JUSTIFY, TA_LEFT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import cm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer

from paperseal.config import env_float
from paperseal.object_storage import (
    ObjectStorageBackend,
    build_artifact_filename,
    create_object_storage_from_env,
    is_storage_uri,
)

logger = logging.getLogger(__name__)

ARTIFACT_KINDS = ("question_paper", "answer_key")
PDF_CONTENT_TYPE = "application/pdf"


@dataclass(frozen=True)
class ArtifactRequest:
    kind: str
    attempt_id: str
    paper: dict[str, Any]
    sections: list[dict[str, Any]] = field(default_factory=list)
    questions: list[dict[str, Any]] = field(default_factory=list)

    @property
    def paper_id(self) -> str:
        return str(self.paper["paper_id"])

    @property
    def institute_id(self) -> str:
        return str(self.paper["institute_id"])

    def as_payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "attempt_id": self.attempt_id,
            "paper": {
                "paper_id": self.paper_id,
                "institute_id": self.institute_id,
                "title": self.paper.get("title", ""),
            },
            "sections": [
                {
                    "section_id": section["section_id"],
                    "section_name": section.get("section_name", ""),
                    "section_order": section.get("section_order"),
                    "marks_per_question": section.get("marks_per_question"),
                }
                for section in self.sections
            ],
            "questions": [
                {
                    "number": index,
                    "question_id": question["question_id"],
                    "section_id": question.get("section_id"),
                    "content": question.get("content") or {},
                }
                for index, question in enumerate(self.questions, start=1)
            ],
        }


def _escape_html(text: Any) -> str:
    """Paragraph markup is a tiny XML dialect; examiner text must not inject tags."""
    return str(text).replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def get_artifact_styles():
    styles = getSampleStyleSheet()
    styles.add(ParagraphStyle(
        name="PaperTitle",
        parent=styles["Heading1"],
        fontSize=16,
        alignment=TA_CENTER,
        spaceAfter=6,
        fontName="Helvetica-Bold",
    ))
    styles.add(ParagraphStyle(
        name="ArtifactHeading",
        parent=styles["Heading2"],
        fontSize=13,
        alignment=TA_CENTER,
        spaceAfter=10,
        fontName="Helvetica-Bold",
    ))
    styles.add(ParagraphStyle(
        name="SectionHeader",
        parent=styles["Heading3"],
        fontSize=12,
        alignment=TA_LEFT,
        spaceBefore=12,
        spaceAfter=8,
        fontName="Helvetica-Bold",
    ))
    styles.add(ParagraphStyle(
        name="QuestionText",
        parent=styles["Normal"],
        fontSize=11,
        alignment=TA_JUSTIFY,
        spaceAfter=6,
        leading=14,
        fontName="Helvetica",
    ))
    styles.add(ParagraphStyle(
        name="OptionText",
        parent=styles["Normal"],
        fontSize=10,
        leftIndent=20,
        spaceAfter=3,
        fontName="Helvetica",
    ))
    styles.add(ParagraphStyle(
        name="AnswerText",
        parent=styles["Normal"],
        fontSize=10,
        leftIndent=10,
        spaceAfter=6,
        leading=13,
        fontName="Helvetica",
    ))
    return styles


def _option_items(options: Any) -> list[tuple[str, Any]]:
    if isinstance(options, dict):
        return sorted((str(key), value) for key, value in options.items())
    if isinstance(options, list):
        return [(chr(ord("A") + index), value) for index, value in enumerate(options)]
    return []


def _grouped_questions(artifact_request: ArtifactRequest) -> list[tuple[str, list[tuple[int, dict[str, Any]]]]]:
    by_section: dict[str | None, list[tuple[int, dict[str, Any]]]] = {}
    for number, question in enumerate(artifact_request.questions, start=1):
        by_section.setdefault(question.get("section_id"), []).append((number, question))
    if not artifact_request.sections:
        return [("", by_section.get(None, []))]
    blocks = []
    for section in artifact_request.sections:
        label = _escape_html(section.get("section_name", ""))
        marks = section.get("marks_per_question")
        if marks is not None:
            label = f"{label} ({_escape_html(marks)} marks each)"
        blocks.append((label, by_section.get(section["section_id"], [])))
    return blocks


def build_artifact_story(artifact_request: ArtifactRequest, styles=None) -> list:
    """Flowables for one artifact: questions with options, or the answers alone for a key."""
    styles = styles or get_artifact_styles()
    heading = "Answer Key" if artifact_request.kind == "answer_key" else "Question Paper"
    story = [
        Paragraph(_escape_html(artifact_request.paper.get("title", "")), styles["PaperTitle"]),
        Paragraph(heading, styles["ArtifactHeading"]),
        Spacer(1, 0.3 * cm),
    ]
    for label, numbered in _grouped_questions(artifact_request):
        if label:
            story.append(Paragraph(label, styles["SectionHeader"]))
        for number, question in numbered:
            content = question.get("content") or {}
            if artifact_request.kind == "answer_key":
                answer = _escape_html(content.get("correct_answer", ""))
                story.append(Paragraph(f"<b>{number}.</b> {answer}", styles["AnswerText"]))
                explanation = content.get("explanation")
                if explanation:
                    story.append(Paragraph(f"<i>{_escape_html(explanation)}</i>", styles["AnswerText"]))
                continue
            text = _escape_html(content.get("question_text", ""))
            story.append(Paragraph(f"<b>{number}.</b> {text}", styles["QuestionText"]))
            for key, value in _option_items(content.get("options")):
                story.append(Paragraph(f"<b>{_escape_html(key)}.</b> {_escape_html(value)}", styles["OptionText"]))
            story.append(Spacer(1, 0.3 * cm))
    return story


def render_artifact_pdf(artifact_request: ArtifactRequest) -> bytes:
    buffer = BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        rightMargin=2 * cm,
        leftMargin=2 * cm,
        topMargin=2 * cm,
        bottomMargin=2 * cm,
        title=str(artifact_request.paper.get("title", "")),
    )
    doc.build(build_artifact_story(artifact_request))
    return buffer.getvalue()


class ArtifactGenerator:
    backend_name = "base"

    def generate(self, *, artifact_request: ArtifactRequest) -> str:
        raise NotImplementedError

    def discard(self, *, artifact_url: str) -> bool:
        raise NotImplementedError

    def read(self, *, artifact_url: str) -> bytes | None:
        """Artifact bytes when this backend holds them; ``None`` when the url is served elsewhere."""
        return None


class ObjectStorageArtifactGenerator(ArtifactGenerator):
    """Render the PDF in-process and keep it in object storage."""

    backend_name = "object_storage"

    def __init__(self, *, object_storage: ObjectStorageBackend) -> None:
        self.object_storage = object_storage

    def generate(self, *, artifact_request: ArtifactRequest) -> str:
        content_bytes = render_artifact_pdf(artifact_request)
        filename = build_artifact_filename(
            kind=artifact_request.kind,
            attempt_id=artifact_request.attempt_id,
            content_bytes=content_bytes,
            extension="pdf",
        )
        return self.object_storage.put_object(
            institute_id=artifact_request.institute_id,
            paper_id=artifact_request.paper_id,
            filename=filename,
            content_bytes=content_bytes,
            content_type=PDF_CONTENT_TYPE,
        )

    def discard(self, *, artifact_url: str) -> bool:
        if not is_storage_uri(artifact_url):
            return False
        return self.object_storage.delete_object(storage_uri=artifact_url)

    def read(self, *, artifact_url: str) -> bytes | None:
        if not is_storage_uri(artifact_url):
            return None
        return self.object_storage.get_object(storage_uri=artifact_url)


def _post_json(*, endpoint: str, payload: dict[str, object], timeout_s: float) -> object:
    body = json.dumps(payload, ensure_ascii=True, sort_keys=True).encode("utf-8")
    req = request.Request(
        endpoint,
        data=body,
        method="POST",
        headers={"Content-Type": "application/json"},
    )
    with request.urlopen(req, timeout=timeout_s) as resp:
        raw = resp.read().decode("utf-8")
    return json.loads(raw)


class HttpArtifactGenerator(ArtifactGenerator):
    """Delegate rendering to an external renderer that answers ``{"url": ...}``."""

    backend_name = "http"

    def __init__(self, *, endpoint: str, timeout_s: float) -> None:
        if not endpoint.strip():
            raise ValueError("PAPERSEAL_ARTIFACT_RENDERER_URL must not be empty")
        self._endpoint = endpoint.strip().rstrip("/")
        self._timeout_s = timeout_s

    def generate(self, *, artifact_request: ArtifactRequest) -> str:
        response = _post_json(
            endpoint=f"{self._endpoint}/render",
            payload=artifact_request.as_payload(),
            timeout_s=self._timeout_s,
        )
        url = response.get("url") if isinstance(response, dict) else None
        if not isinstance(url, str) or not url.strip():
            raise RuntimeError("renderer response missing url")
        return url.strip()

    def discard(self, *, artifact_url: str) -> bool:
        response = _post_json(
            endpoint=f"{self._endpoint}/discard",
            payload={"url": artifact_url},
            timeout_s=self._timeout_s,
        )
        return bool(response.get("deleted")) if isinstance(response, dict) else False


def discard_artifacts(generator: ArtifactGenerator, urls: list[str]) -> int:
    """Best-effort removal of stale artifacts after the state change committed."""
    removed = 0
    for url in urls:
        try:
            if generator.discard(artifact_url=url):
                removed += 1
        except Exception as exc:
            logger.warning("artifact_discard_failed url=%s error=%s", url, exc)
    return removed


def create_artifact_generator_from_env(environ: Mapping[str, str] | None = None) -> ArtifactGenerator:
    env = os.environ if environ is None else environ
    backend = env.get("PAPERSEAL_ARTIFACT_BACKEND", "object_storage").strip().lower() or "object_storage"
    if backend == "http":
        return HttpArtifactGenerator(
            endpoint=env.get("PAPERSEAL_ARTIFACT_RENDERER_URL", ""),
            timeout_s=env_float(env, "PAPERSEAL_ARTIFACT_TIMEOUT_S", default=30.0, minimum=0.01),
        )
    return ObjectStorageArtifactGenerator(object_storage=create_object_storage_from_env(env))
