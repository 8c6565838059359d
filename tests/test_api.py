"""
Tests for Variant Bridge API endpoints.

Tests cover:
- Health check
- Authorization gate (keys, roles, admin endpoints)
- Bridge job queue (enqueue, poll, update, delete)
- Variant CRUD and cascading delete
- Blob upload and file URLs
- Error mapping
"""

import asyncio
from io import BytesIO

import pytest


@pytest.fixture
def variant_id(make_variant):
    return make_variant(preview_path="public/uploads/preview.svg").id


class TestHealthCheck:
    """Tests for the /healthz endpoint."""

    def test_health_check_returns_ok(self, client):
        """Health check should return status ok without a key."""
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestAuthorization:
    """Tests for API keys and role checks."""

    def test_missing_key_is_unauthorized(self, client):
        response = client.get("/bridge/jobs")
        assert response.status_code == 401

    def test_invalid_key_is_unauthorized(self, client):
        response = client.get("/bridge/jobs", headers={"X-API-Key": "invalid-key"})
        assert response.status_code == 401

    def test_wrong_role_is_forbidden(self, client, designer_headers):
        """Designers enqueue work but cannot poll the bridge queue."""
        response = client.get("/bridge/jobs", headers=designer_headers)
        assert response.status_code == 403

    def test_bridge_cannot_enqueue(self, client, bridge_headers, variant_id):
        response = client.post("/bridge/jobs", json={"variantIds": [variant_id]}, headers=bridge_headers)
        assert response.status_code == 403

    def test_create_api_key_with_master_key(self, client, admin_headers):
        response = client.post("/admin/keys", json={"owner": "bridge-host", "role": "bridge"}, headers=admin_headers)
        assert response.status_code == 201

        data = response.json()
        assert data["apiKey"].startswith("vb_")
        assert data["record"]["owner"] == "bridge-host"
        assert data["record"]["role"] == "bridge"

        poll = client.get("/bridge/jobs", headers={"X-API-Key": data["apiKey"]})
        assert poll.status_code == 200

    def test_non_admin_cannot_create_keys(self, client, designer_headers):
        response = client.post("/admin/keys", json={"owner": "x", "role": "admin"}, headers=designer_headers)
        assert response.status_code == 403

    def test_list_and_revoke_keys(self, client, admin_headers, bridge_headers):
        listed = client.get("/admin/keys", headers=admin_headers)
        assert listed.status_code == 200
        key_id = listed.json()[0]["id"]

        revoked = client.delete(f"/admin/keys/{key_id}", headers=admin_headers)
        assert revoked.status_code == 200
        assert revoked.json() == {"status": "revoked"}

        assert client.get("/bridge/jobs", headers=bridge_headers).status_code == 401

    def test_revoke_unknown_key(self, client, admin_headers):
        response = client.delete("/admin/keys/missing", headers=admin_headers)
        assert response.status_code == 404


class TestEnqueue:
    """Tests for POST /bridge/jobs."""

    def test_enqueue_creates_jobs(self, client, admin_headers, variant_id):
        response = client.post("/bridge/jobs", json={"variantIds": [variant_id], "priority": 3}, headers=admin_headers)
        assert response.status_code == 200

        data = response.json()
        assert data["success"] is True
        assert data["created"] == 1
        assert data["skipped"] == 0
        assert data["jobs"][0]["variantId"] == variant_id
        assert data["jobs"][0]["status"] == "pending"
        assert data["jobs"][0]["priority"] == 3

    def test_second_enqueue_reports_skipped(self, client, designer_headers, variant_id):
        client.post("/bridge/jobs", json={"variantIds": [variant_id]}, headers=designer_headers)
        response = client.post("/bridge/jobs", json={"variantIds": [variant_id]}, headers=designer_headers)

        assert response.status_code == 200
        assert response.json()["created"] == 0
        assert response.json()["skipped"] == 1

    @pytest.mark.parametrize("body", [{}, {"variantIds": []}])
    def test_missing_variant_ids_is_bad_request(self, client, admin_headers, body):
        response = client.post("/bridge/jobs", json=body, headers=admin_headers)
        assert response.status_code == 400
        assert "variantIds" in response.json()["detail"]

    def test_unknown_variant_is_not_found(self, client, admin_headers):
        response = client.post("/bridge/jobs", json={"variantIds": ["nope"]}, headers=admin_headers)
        assert response.status_code == 404


class TestPoll:
    """Tests for GET /bridge/jobs."""

    def test_poll_returns_priority_order_with_context(self, client, admin_headers, bridge_headers, make_variant):
        ids = [make_variant(f"v{index}").id for index in range(3)]
        for variant_id, priority in zip(ids, [1, 5, 3]):
            client.post("/bridge/jobs", json={"variantIds": [variant_id], "priority": priority}, headers=admin_headers)

        response = client.get("/bridge/jobs", params={"status": "pending", "claim": "false"}, headers=bridge_headers)
        assert response.status_code == 200

        jobs = response.json()["jobs"]
        assert [job["priority"] for job in jobs] == [5, 3, 1]
        variant = jobs[0]["variant"]
        assert variant["id"] == ids[1]
        assert variant["status"] == "generating"
        assert variant["item"]["template"]["svgPath"] == "templates/jersey-a.svg"
        assert variant["item"]["project"]["team"]["school"]["name"] == "Lincoln High"

    def test_poll_claims_by_default(self, client, admin_headers, bridge_headers, variant_id):
        client.post("/bridge/jobs", json={"variantIds": [variant_id]}, headers=admin_headers)

        first = client.get("/bridge/jobs", params={"limit": 5}, headers=bridge_headers).json()["jobs"]
        second = client.get("/bridge/jobs", params={"limit": 5}, headers=bridge_headers).json()["jobs"]

        assert len(first) == 1
        assert first[0]["status"] == "processing"
        assert first[0]["startedAt"] is not None
        assert second == []

    def test_unknown_status_is_bad_request(self, client, bridge_headers):
        response = client.get("/bridge/jobs", params={"status": "archived"}, headers=bridge_headers)
        assert response.status_code == 400


class TestJobUpdate:
    """Tests for PATCH /bridge/jobs/{id}."""

    def _enqueue(self, client, headers, variant_id):
        return client.post("/bridge/jobs", json={"variantIds": [variant_id]}, headers=headers).json()["jobs"][0]

    def test_completion_updates_variant(self, client, admin_headers, bridge_headers, variant_id, item_id):
        job = self._enqueue(client, admin_headers, variant_id)

        response = client.patch(
            f"/bridge/jobs/{job['id']}",
            json={"status": "completed", "finalArtifactPath": "uploads/final.ai", "finalArtifactIsPublic": False},
            headers=bridge_headers,
        )
        assert response.status_code == 200
        assert response.json()["job"]["status"] == "completed"
        assert response.json()["job"]["completedAt"] is not None

        variant = client.get(f"/items/{item_id}/variants/{variant_id}", headers=admin_headers).json()["variant"]
        assert variant["status"] == "generated"
        assert variant["finalArtifact"] == {"path": "uploads/final.ai", "isPublic": False}
        assert variant["finalUrl"] == "https://blobs.test/uploads/final.ai?signature=test"
        assert variant["errorMessage"] is None

    def test_failure_updates_variant(self, client, admin_headers, bridge_headers, variant_id, item_id):
        job = self._enqueue(client, admin_headers, variant_id)

        response = client.patch(f"/bridge/jobs/{job['id']}", json={"status": "failed"}, headers=bridge_headers)
        assert response.status_code == 200

        variant = client.get(f"/items/{item_id}/variants/{variant_id}", headers=admin_headers).json()["variant"]
        assert variant["status"] == "failed"
        assert variant["errorMessage"] == "Bridge job failed"

    def test_completed_redelivery_keeps_timestamp(self, client, admin_headers, bridge_headers, variant_id):
        job = self._enqueue(client, admin_headers, variant_id)
        body = {"status": "completed", "finalArtifactPath": "uploads/final.ai"}

        first = client.patch(f"/bridge/jobs/{job['id']}", json=body, headers=bridge_headers).json()["job"]
        second = client.patch(f"/bridge/jobs/{job['id']}", json=body, headers=bridge_headers)

        assert second.status_code == 200
        assert second.json()["job"]["completedAt"] == first["completedAt"]

    def test_transition_out_of_terminal_is_conflict(self, client, admin_headers, bridge_headers, variant_id):
        job = self._enqueue(client, admin_headers, variant_id)
        client.patch(f"/bridge/jobs/{job['id']}", json={"status": "failed"}, headers=bridge_headers)

        response = client.patch(f"/bridge/jobs/{job['id']}", json={"status": "processing"}, headers=bridge_headers)
        assert response.status_code == 409

    def test_completed_without_artifact_is_bad_request(self, client, admin_headers, bridge_headers, variant_id):
        job = self._enqueue(client, admin_headers, variant_id)

        response = client.patch(f"/bridge/jobs/{job['id']}", json={"status": "completed"}, headers=bridge_headers)
        assert response.status_code == 400

    def test_unknown_job_is_not_found(self, client, bridge_headers):
        response = client.patch("/bridge/jobs/missing", json={"status": "processing"}, headers=bridge_headers)
        assert response.status_code == 404

    def test_invalid_status_value(self, client, bridge_headers):
        response = client.patch("/bridge/jobs/missing", json={"status": "done"}, headers=bridge_headers)
        assert response.status_code == 422


class TestJobDelete:
    """Tests for DELETE /bridge/jobs/{id}."""

    def test_delete_job(self, client, admin_headers, variant_id):
        job = client.post("/bridge/jobs", json={"variantIds": [variant_id]}, headers=admin_headers).json()["jobs"][0]

        response = client.delete(f"/bridge/jobs/{job['id']}", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["success"] is True

        again = client.delete(f"/bridge/jobs/{job['id']}", headers=admin_headers)
        assert again.status_code == 404


class TestVariants:
    """Tests for the /items/{item_id}/variants endpoints."""

    def test_create_and_list(self, client, designer_headers, item_id):
        response = client.post(
            f"/items/{item_id}/variants",
            json={
                "variantName": "Variant 1",
                "configuration": {"layers": [{"layerName": "Body", "value": "#FF0000"}]},
                "previewArtifact": {"path": "public/uploads/v1.svg", "isPublic": True},
            },
            headers=designer_headers,
        )
        assert response.status_code == 201
        variant = response.json()["variant"]
        assert variant["status"] == "preview"
        assert variant["previewUrl"] == "https://blobs.test/public/uploads/v1.svg"

        listed = client.get(f"/items/{item_id}/variants", headers=designer_headers)
        assert listed.status_code == 200
        assert [v["id"] for v in listed.json()["variants"]] == [variant["id"]]

    def test_create_for_unknown_item(self, client, designer_headers):
        response = client.post("/items/missing/variants", json={"variantName": "x"}, headers=designer_headers)
        assert response.status_code == 404

    def test_patch_updates_name(self, client, designer_headers, item_id, variant_id):
        response = client.patch(
            f"/items/{item_id}/variants/{variant_id}", json={"variantName": "Away"}, headers=designer_headers
        )
        assert response.status_code == 200
        assert response.json()["variant"]["variantName"] == "Away"

    def test_patch_cannot_set_status(self, client, designer_headers, item_id, variant_id):
        response = client.patch(
            f"/items/{item_id}/variants/{variant_id}", json={"status": "generated"}, headers=designer_headers
        )
        assert response.status_code == 422

        variant = client.get(f"/items/{item_id}/variants/{variant_id}", headers=designer_headers).json()["variant"]
        assert variant["status"] == "preview"

    def test_get_from_other_item_is_not_found(self, client, designer_headers, variant_id):
        response = client.get(f"/items/other/variants/{variant_id}", headers=designer_headers)
        assert response.status_code == 404

    def test_delete_variant_removes_blobs(self, client, designer_headers, blob_store, item_id, variant_id):
        response = client.delete(f"/items/{item_id}/variants/{variant_id}", headers=designer_headers)
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert blob_store.deleted == ["public/uploads/preview.svg"]

        missing = client.get(f"/items/{item_id}/variants/{variant_id}", headers=designer_headers)
        assert missing.status_code == 404

    def test_delete_all_variants(self, client, designer_headers, make_variant, item_id):
        make_variant("a")
        make_variant("b")

        response = client.delete(f"/items/{item_id}/variants", headers=designer_headers)
        assert response.status_code == 200
        assert response.json()["deleted"] == 2


class TestBlobEndpoints:
    """Tests for artifact upload and URL resolution."""

    def test_upload_artifact(self, client, bridge_headers, blob_store):
        response = client.post(
            "/bridge/upload",
            files={"file": ("Home Jersey.ai", BytesIO(b"%!PS-Adobe"), "application/postscript")},
            data={"isPublic": "false"},
            headers=bridge_headers,
        )
        assert response.status_code == 201

        data = response.json()
        assert data["cloudStoragePath"].startswith("uploads/")
        assert data["cloudStoragePath"].endswith("-Home_Jersey.ai")
        assert data["isPublic"] is False
        assert blob_store.blobs[data["cloudStoragePath"]] == b"%!PS-Adobe"

    def test_upload_public_artifact(self, client, bridge_headers, blob_store):
        """The visibility form field uses the same camelCase name as the JSON bodies."""
        response = client.post(
            "/bridge/upload",
            files={"file": ("logo.svg", BytesIO(b"<svg/>"), "image/svg+xml")},
            data={"isPublic": "true"},
            headers=bridge_headers,
        )
        assert response.status_code == 201

        data = response.json()
        assert data["cloudStoragePath"].startswith("public/uploads/")
        assert data["isPublic"] is True

    def test_upload_writes_outside_event_loop(self, client, bridge_headers, blob_store, monkeypatch):
        """Blob writes block, so they must run in a worker thread."""
        loops = []
        original_put = blob_store.put

        def put(*args, **kwargs):
            try:
                loops.append(asyncio.get_running_loop())
            except RuntimeError:
                loops.append(None)
            return original_put(*args, **kwargs)

        monkeypatch.setattr(blob_store, "put", put)

        response = client.post(
            "/bridge/upload",
            files={"file": ("a.ai", BytesIO(b"data"), "application/postscript")},
            headers=bridge_headers,
        )

        assert response.status_code == 201
        assert loops == [None]

    def test_file_url(self, client, bridge_headers):
        response = client.post(
            "/upload/file-url",
            json={"cloudStoragePath": "public/uploads/logo.svg", "isPublic": True},
            headers=bridge_headers,
        )
        assert response.status_code == 200
        assert response.json() == {"url": "https://blobs.test/public/uploads/logo.svg"}

    def test_file_url_requires_key(self, client):
        response = client.post("/upload/file-url", json={"cloudStoragePath": "x"})
        assert response.status_code == 401
