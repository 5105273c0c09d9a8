"""
Integration Tests — OCR Queue & Document Pipeline API
══════════════════════════════════════════════════════
These tests exercise the FULL FastAPI routing stack, including:
  - JWT verification and role gates (viewer / member / service)
  - Token-bucket rate limits (shared global budget; per user enqueue 20/min, sync OCR 10/min)
  - Request validation and the uniform ErrorResponse envelope
  - Enqueue → process → status round trip
  - Synchronous OCR, chunk listing with cache, query ranking and token trimming, cache statistics

What is mocked vs real
──────────────────────
  ✅ Real: FastAPI routing, JWT decode (RS256), RoleChecker, rate limiter,
           EnqueueService, QueueProcessor, ExtractionChain, heuristic
           analysis, chunking, caches, exception handlers
  🔲 Fake: PostgreSQL   (InMemoryJobStore / InMemoryDocumentStore)
  🔲 Fake: S3 / HTTP    (FakeLoader)
  🔲 Fake: OCR service  (StaticOcrProvider)
  🔲 Mock: JWKS fetch   (patched_jwks)

How to run
──────────
  pytest -m integration tests/integration/test_queue_api.py -v
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock

import pytest

from casedocs.core.errors import ProviderErrorKind
from casedocs.core.rate_limit import RateLimitConfig, TokenBucketRateLimiter

from tests.conftest import SAMPLE_LEGAL_TEXT

ENQUEUE = "/api/v1/ocr-queue/enqueue"
PROCESS = "/api/v1/ocr-queue/process"
STATUS  = "/api/v1/ocr-queue/status"


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _seed(pipeline, owner_id, count: int = 1, pdf_blob=None):
    case = pipeline.documents.add_case(owner_id)
    docs = [
        pipeline.documents.add_document(case, file_url=f"cases/{case.id}/{i}.pdf")
        for i in range(count)
    ]
    if pdf_blob is not None:
        for doc in docs:
            pipeline.loader.blobs[doc.file_url] = pdf_blob
    return case, docs


def _enqueue_body(case, docs, **extra) -> dict:
    return {"case_id": str(case.id), "document_ids": [str(d.id) for d in docs], **extra}


# ─────────────────────────────────────────────────────────────────────────────
# POST /ocr-queue/enqueue
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
@pytest.mark.queue
class TestEnqueueEndpoint:

    async def test_enqueue_returns_counts(self, async_client, pipeline, member_token, test_user_id):
        case, docs = _seed(pipeline, test_user_id, count=2)

        resp = await async_client.post(ENQUEUE, json=_enqueue_body(case, docs, priority=7),
                                       headers=_auth(member_token))

        assert resp.status_code == 200
        body = resp.json()
        assert (body["queued"], body["already_queued"], body["skipped"]) == (2, 0, 0)
        assert len(body["job_ids"]) == 2
        assert {j.priority for j in pipeline.jobs.jobs.values()} == {7}
        assert "X-Request-ID" in resp.headers

    async def test_second_enqueue_reports_already_queued(self, async_client, pipeline, member_token, test_user_id):
        case, docs = _seed(pipeline, test_user_id)
        await async_client.post(ENQUEUE, json=_enqueue_body(case, docs), headers=_auth(member_token))

        resp = await async_client.post(ENQUEUE, json=_enqueue_body(case, docs), headers=_auth(member_token))

        assert resp.json()["already_queued"] == 1
        assert len(pipeline.jobs.jobs) == 1

    async def test_someone_elses_case_is_403(self, async_client, pipeline, make_token, test_user_id, other_user_id):
        case, docs = _seed(pipeline, test_user_id)
        token = make_token(role="member", user_id=other_user_id)

        resp = await async_client.post(ENQUEUE, json=_enqueue_body(case, docs), headers=_auth(token))

        assert resp.status_code == 403
        body = resp.json()
        assert body["error_code"] == "FORBIDDEN"
        assert body["request_id"]
        assert pipeline.jobs.jobs == {}

    async def test_unknown_case_is_404(self, async_client, member_token):
        body = {"case_id": str(uuid.uuid4()), "document_ids": [str(uuid.uuid4())]}

        resp = await async_client.post(ENQUEUE, json=body, headers=_auth(member_token))

        assert resp.status_code == 404
        assert resp.json()["error_code"] == "CASE_NOT_FOUND"

    @pytest.mark.parametrize("body", [
        {"case_id": str(uuid.uuid4()), "document_ids": []},
        {"case_id": str(uuid.uuid4()), "document_ids": [str(uuid.uuid4())], "priority": 11},
        {"case_id": "not-a-uuid", "document_ids": [str(uuid.uuid4())]},
        {"document_ids": [str(uuid.uuid4())]},
    ])
    async def test_invalid_body_is_422_envelope(self, async_client, member_token, body):
        resp = await async_client.post(ENQUEUE, json=body, headers=_auth(member_token))

        assert resp.status_code == 422
        payload = resp.json()
        assert payload["error_code"] == "VALIDATION_ERROR"
        assert payload["details"]

    async def test_viewer_cannot_enqueue(self, async_client, pipeline, viewer_token, test_user_id):
        case, docs = _seed(pipeline, test_user_id)

        resp = await async_client.post(ENQUEUE, json=_enqueue_body(case, docs), headers=_auth(viewer_token))

        assert resp.status_code == 403
        assert resp.json()["error_code"] == "FORBIDDEN"

    async def test_missing_token_is_rejected(self, async_client):
        resp = await async_client.post(ENQUEUE, json={})
        assert resp.status_code in (401, 403)

    async def test_expired_token_is_401(self, async_client, make_token):
        resp = await async_client.post(ENQUEUE, json={}, headers=_auth(make_token(expired=True)))

        assert resp.status_code == 401
        assert resp.json()["error_code"] == "UNAUTHORIZED"

    async def test_twenty_first_request_in_a_minute_is_429(
        self, async_client, pipeline, member_token, test_user_id,
    ):
        case, docs = _seed(pipeline, test_user_id)
        body = _enqueue_body(case, docs)
        for _ in range(20):
            ok = await async_client.post(ENQUEUE, json=body, headers=_auth(member_token))
            assert ok.status_code == 200

        resp = await async_client.post(ENQUEUE, json=body, headers=_auth(member_token))

        assert resp.status_code == 429
        payload = resp.json()
        assert payload["error_code"] == "RATE_LIMITED"
        assert payload["reset_at"] == pipeline.clock.timestamp() + 60
        assert resp.headers["Retry-After"] == "60"

        pipeline.clock.advance(60)
        again = await async_client.post(ENQUEUE, json=body, headers=_auth(member_token))
        assert again.status_code == 200

    async def test_rate_limit_is_per_user(self, async_client, pipeline, make_token, test_user_id, other_user_id):
        case, docs = _seed(pipeline, test_user_id)
        mine = make_token(role="member")
        for _ in range(20):
            await async_client.post(ENQUEUE, json=_enqueue_body(case, docs), headers=_auth(mine))

        other_case, other_docs = _seed(pipeline, other_user_id)
        resp = await async_client.post(
            ENQUEUE, json=_enqueue_body(other_case, other_docs),
            headers=_auth(make_token(role="member", user_id=other_user_id)),
        )

        assert resp.status_code == 200

    async def test_shared_budget_limits_all_users(
        self, app, async_client, pipeline, make_token, test_user_id, other_user_id,
    ):
        app.state.rate_limiter = TokenBucketRateLimiter(
            global_config=RateLimitConfig.per_minute(2),
            clock=pipeline.clock.timestamp,
        )
        case, docs = _seed(pipeline, test_user_id)
        other_case, other_docs = _seed(pipeline, other_user_id)
        mine = _auth(make_token(role="member"))
        theirs = _auth(make_token(role="member", user_id=other_user_id))

        for _ in range(2):
            ok = await async_client.post(ENQUEUE, json=_enqueue_body(case, docs), headers=mine)
            assert ok.status_code == 200
        resp = await async_client.post(ENQUEUE, json=_enqueue_body(other_case, other_docs), headers=theirs)

        assert resp.status_code == 429
        assert resp.json()["reset_at"] == pipeline.clock.timestamp() + 60

    def test_default_limiter_takes_global_budget_from_settings(self, pipeline):
        from fastapi import FastAPI

        from casedocs.api.dependencies import install_pipeline
        from casedocs.core.config import Settings

        target = FastAPI()
        install_pipeline(
            target,
            Settings(global_rate_limit_per_minute=3),
            jobs=pipeline.jobs,
            documents=pipeline.documents,
            processor=pipeline.processor,
            caches=pipeline.caches,
        )

        decision = target.state.rate_limiter.check_global_limit()
        assert decision.allowed
        assert decision.remaining == 2


# ─────────────────────────────────────────────────────────────────────────────
# POST /ocr-queue/process  &  GET /ocr-queue/status
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
@pytest.mark.queue
class TestProcessAndStatus:

    async def test_process_requires_service_role(self, async_client, member_token):
        resp = await async_client.post(PROCESS, headers=_auth(member_token))

        assert resp.status_code == 403
        assert "service" in resp.json()["message"]

    async def test_enqueue_process_status_round_trip(
        self, async_client, pipeline, member_token, viewer_token, service_token, test_user_id, pdf_blob,
    ):
        case, docs = _seed(pipeline, test_user_id, count=2, pdf_blob=pdf_blob)
        await async_client.post(ENQUEUE, json=_enqueue_body(case, docs), headers=_auth(member_token))

        before = await async_client.get(STATUS, headers=_auth(viewer_token))
        assert before.json()["counts"]["pending"] == 2

        resp = await async_client.post(PROCESS, headers=_auth(service_token))

        assert resp.status_code == 200
        report = resp.json()
        assert (report["processed"], report["failed"], report["remaining"]) == (2, 0, 0)
        assert {j["status"] for j in report["jobs"]} == {"completed"}

        after = await async_client.get(STATUS, params={"case_id": str(case.id)}, headers=_auth(viewer_token))
        body = after.json()
        assert body["counts"] == {"pending": 0, "processing": 0, "completed": 2, "failed": 0}
        assert {j["document_id"] for j in body["jobs"]} == {str(d.id) for d in docs}
        assert all(j["completed_at"] for j in body["jobs"])

    async def test_status_only_shows_own_jobs(self, async_client, pipeline, make_token, test_user_id, other_user_id):
        pipeline.jobs.add(user_id=test_user_id)
        pipeline.jobs.add(user_id=other_user_id)

        resp = await async_client.get(STATUS, headers=_auth(make_token(role="viewer")))

        assert len(resp.json()["jobs"]) == 1

    async def test_status_needs_a_user_token(self, async_client, service_token):
        resp = await async_client.get(STATUS, headers=_auth(service_token))
        assert resp.status_code == 403

    async def test_failed_job_shows_error(self, async_client, pipeline, member_token, service_token, test_user_id):
        case, docs = _seed(pipeline, test_user_id)          # no blob: source file missing
        await async_client.post(ENQUEUE, json=_enqueue_body(case, docs), headers=_auth(member_token))

        resp = await async_client.post(PROCESS, headers=_auth(service_token))

        job = resp.json()["jobs"][0]
        assert job["status"] == "failed"
        assert job["error"].startswith("Source file not found")


# ─────────────────────────────────────────────────────────────────────────────
# POST /documents/{id}/ocr
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
@pytest.mark.ocr
class TestSynchronousOcr:

    async def test_document_is_processed_inline(self, async_client, pipeline, member_token, test_user_id, pdf_blob):
        _, (doc,) = _seed(pipeline, test_user_id, pdf_blob=pdf_blob)

        resp = await async_client.post(f"/api/v1/documents/{doc.id}/ocr", headers=_auth(member_token))

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "completed"
        assert body["document_id"] == str(doc.id)
        assert resp.headers["X-Job-ID"] == body["id"]
        assert pipeline.documents.results[doc.id].provider == "azure-document-intelligence"
        assert pipeline.jobs.jobs[uuid.UUID(body["id"])].priority == 10

    async def test_failed_extraction_is_reported_in_body(
        self, async_client, pipeline, member_token, test_user_id, pdf_blob,
    ):
        _, (doc,) = _seed(pipeline, test_user_id, pdf_blob=pdf_blob)
        pipeline.ocr.error = ProviderErrorKind.REJECTED

        resp = await async_client.post(f"/api/v1/documents/{doc.id}/ocr", headers=_auth(member_token))

        assert resp.status_code == 200
        assert resp.json()["status"] == "failed"
        assert "All ocr providers failed" in resp.json()["error"]

    async def test_already_queued_is_409(self, async_client, pipeline, member_token, test_user_id):
        case, (doc,) = _seed(pipeline, test_user_id)
        pipeline.jobs.add(document_id=doc.id, case_id=case.id, user_id=test_user_id)

        resp = await async_client.post(f"/api/v1/documents/{doc.id}/ocr", headers=_auth(member_token))

        assert resp.status_code == 409
        assert resp.json()["error_code"] == "ALREADY_QUEUED"

    async def test_someone_elses_document_is_403(self, async_client, pipeline, make_token, test_user_id, other_user_id):
        _, (doc,) = _seed(pipeline, test_user_id)
        token = make_token(role="member", user_id=other_user_id)

        resp = await async_client.post(f"/api/v1/documents/{doc.id}/ocr", headers=_auth(token))

        assert resp.status_code == 403

    async def test_eleventh_request_in_a_minute_is_429(self, async_client, member_token):
        url = f"/api/v1/documents/{uuid.uuid4()}/ocr"
        for _ in range(10):
            resp = await async_client.post(url, headers=_auth(member_token))
            assert resp.status_code == 404

        resp = await async_client.post(url, headers=_auth(member_token))

        assert resp.status_code == 429
        assert resp.json()["error_code"] == "RATE_LIMITED"


# ─────────────────────────────────────────────────────────────────────────────
# GET /documents/{id}/chunks
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
@pytest.mark.chunking
class TestChunkEndpoint:

    async def test_not_extracted_is_409(self, async_client, pipeline, viewer_token, test_user_id):
        _, (doc,) = _seed(pipeline, test_user_id)

        resp = await async_client.get(f"/api/v1/documents/{doc.id}/chunks", headers=_auth(viewer_token))

        assert resp.status_code == 409
        assert resp.json()["error_code"] == "NOT_EXTRACTED"

    async def test_chunks_then_cache_hit(self, async_client, pipeline, viewer_token, test_user_id):
        _, (doc,) = _seed(pipeline, test_user_id)
        pipeline.documents.texts[doc.id] = (SAMPLE_LEGAL_TEXT, [])
        url = f"/api/v1/documents/{doc.id}/chunks"
        params = {"max_chunk_size": 120, "min_chunk_size": 20, "overlap_size": 10}

        first = await async_client.get(url, params=params, headers=_auth(viewer_token))
        second = await async_client.get(url, params=params, headers=_auth(viewer_token))

        assert first.status_code == 200
        body = first.json()
        assert body["cached"] is False
        assert body["total_chunks"] == len(body["chunks"]) > 1
        assert all(c["char_count"] <= 120 for c in body["chunks"])
        assert second.json()["cached"] is True
        assert second.json()["chunks"] == body["chunks"]

    async def test_page_breaks_tag_chunks(self, async_client, pipeline, viewer_token, test_user_id):
        _, (doc,) = _seed(pipeline, test_user_id)
        text = "First page text.\n\nSecond page text."
        pipeline.documents.texts[doc.id] = (text, [18])

        resp = await async_client.get(f"/api/v1/documents/{doc.id}/chunks", headers=_auth(viewer_token))

        assert [c["page_number"] for c in resp.json()["chunks"]] == [1, 2]

    async def test_inconsistent_options_are_422(self, async_client, pipeline, viewer_token, test_user_id):
        _, (doc,) = _seed(pipeline, test_user_id)

        resp = await async_client.get(
            f"/api/v1/documents/{doc.id}/chunks",
            params={"max_chunk_size": 100, "min_chunk_size": 500},
            headers=_auth(viewer_token),
        )

        assert resp.status_code == 422
        assert resp.json()["error_code"] == "VALIDATION_ERROR"

    async def test_non_positive_size_is_422(self, async_client, viewer_token):
        resp = await async_client.get(
            f"/api/v1/documents/{uuid.uuid4()}/chunks",
            params={"max_chunk_size": 0},
            headers=_auth(viewer_token),
        )
        assert resp.status_code == 422

    async def test_someone_elses_document_is_403(self, async_client, pipeline, make_token, test_user_id, other_user_id):
        _, (doc,) = _seed(pipeline, test_user_id)
        pipeline.documents.texts[doc.id] = (SAMPLE_LEGAL_TEXT, [])

        resp = await async_client.get(
            f"/api/v1/documents/{doc.id}/chunks",
            headers=_auth(make_token(role="viewer", user_id=other_user_id)),
        )

        assert resp.status_code == 403

    async def test_unknown_document_is_404(self, async_client, viewer_token):
        resp = await async_client.get(f"/api/v1/documents/{uuid.uuid4()}/chunks", headers=_auth(viewer_token))

        assert resp.status_code == 404
        assert resp.json()["error_code"] == "DOCUMENT_NOT_FOUND"

    async def test_query_ranks_matching_page_first(self, async_client, pipeline, viewer_token, test_user_id):
        _, (doc,) = _seed(pipeline, test_user_id)
        pages = [
            "The lease was signed in March.\n\n",
            "The tenant withheld rent in May. The tenant then left.\n\n",
            "Closing remarks of counsel.",
        ]
        breaks = [len(pages[0]), len(pages[0]) + len(pages[1])]
        pipeline.documents.texts[doc.id] = ("".join(pages), breaks)

        resp = await async_client.get(
            f"/api/v1/documents/{doc.id}/chunks",
            params={"query": "tenant rent", "top_k": 1},
            headers=_auth(viewer_token),
        )

        body = resp.json()
        assert resp.status_code == 200
        assert body["total_chunks"] == 1
        (chunk,) = body["chunks"]
        assert chunk["page_number"] == 2
        assert "withheld" in chunk["content"]

    async def test_max_tokens_trims_selection(self, async_client, pipeline, viewer_token, test_user_id):
        _, (doc,) = _seed(pipeline, test_user_id)
        pipeline.documents.texts[doc.id] = (SAMPLE_LEGAL_TEXT, [])
        url = f"/api/v1/documents/{doc.id}/chunks"
        params = {"max_chunk_size": 120, "min_chunk_size": 20, "overlap_size": 10}

        full = await async_client.get(url, params=params, headers=_auth(viewer_token))
        trimmed = await async_client.get(url, params={**params, "max_tokens": 1}, headers=_auth(viewer_token))

        assert full.json()["total_chunks"] > 1
        body = trimmed.json()
        assert body["cached"] is True
        assert body["total_chunks"] == 1
        assert body["chunks"][0]["char_count"] == 4
        assert full.json()["chunks"][0]["content"].startswith(body["chunks"][0]["content"])

    async def test_non_positive_top_k_is_422(self, async_client, viewer_token):
        resp = await async_client.get(
            f"/api/v1/documents/{uuid.uuid4()}/chunks",
            params={"query": "lease", "top_k": 0},
            headers=_auth(viewer_token),
        )
        assert resp.status_code == 422


# ─────────────────────────────────────────────────────────────────────────────
# Cache stats & operations endpoints
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestOperations:

    async def test_cache_stats_for_service(self, async_client, service_token):
        resp = await async_client.get("/api/v1/documents/cache/stats", headers=_auth(service_token))

        assert resp.status_code == 200
        caches = resp.json()["caches"]
        assert set(caches) == {"extraction", "analysis", "chunks"}
        assert caches["chunks"]["hit_rate"] == 0.0

    async def test_cache_stats_forbidden_for_members(self, async_client, member_token):
        resp = await async_client.get("/api/v1/documents/cache/stats", headers=_auth(member_token))
        assert resp.status_code == 403

    async def test_health(self, async_client):
        resp = await async_client.get("/health")
        assert resp.json() == {"status": "ok", "service": "casedocs-pipeline"}

    async def test_ready_reports_database_outage(self, async_client, monkeypatch):
        monkeypatch.setattr(
            "casedocs.main.check_db_health",
            AsyncMock(return_value={"status": "error", "detail": "connection refused"}),
        )

        resp = await async_client.get("/ready")

        assert resp.status_code == 503
        assert resp.json()["status"] == "not_ready"

    async def test_request_id_is_echoed(self, async_client):
        resp = await async_client.get("/health", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"
