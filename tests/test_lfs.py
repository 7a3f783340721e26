"""Test the Git LFS batch processor and HTTP API."""

from datetime import datetime, timezone

import pytest

from lfshost.core import TransferOperation
from lfshost.core.oid import storage_key
from lfshost.lfs import LFS_CONTENT_TYPE, BatchProcessor, LFSBatchRequest

from . import OID_A, OID_B, OID_C, basic_auth, find_object
from .conftest import FakeAuthenticator, FakeStorage

# All test coroutines will be treated as marked.
pytestmark = pytest.mark.asyncio


def batch(operation, *objects):
    """Build a batch request from (oid, size) pairs."""
    return LFSBatchRequest(
        operation=operation,
        objects=[{"oid": oid, "size": size} for oid, size in objects],
    )


class TestBatchProcessor:
    """Tests for the per-object batch algorithm."""

    async def test_download_missing_object(self, processor, storage):
        """Test that a missing object is reported as not found."""
        response = await processor.process(batch("download", (OID_A, 10)))
        dumped = response.model_dump(exclude_none=True)

        assert dumped["objects"] == [
            {"oid": OID_A, "size": 10, "error": {"code": 404, "message": "object not found"}}
        ]
        assert storage.url_calls == []

    async def test_download_existing_object(self, processor, storage):
        """Test that a stored object gets a signed GET action."""
        storage.objects[storage_key(OID_A)] = 10

        response = await processor.process(batch("download", (OID_A, 10)))
        obj = response.objects[0]

        assert obj.error is None
        assert obj.authenticated is True
        assert set(obj.actions) == {"download"}
        action = obj.actions["download"]
        assert action.method == "GET"
        assert action.href.startswith("https://storage.example.com/aa/aa/")
        assert action.expires_in == 900
        assert action.expires_at > datetime.now(timezone.utc)
        assert storage.url_calls == [
            (storage_key(OID_A), TransferOperation.download, 10)
        ]

    async def test_download_size_mismatch(self, processor, storage):
        """Test that a stored object with another size is not handed out."""
        storage.objects[storage_key(OID_A)] = 11

        response = await processor.process(batch("download", (OID_A, 10)))

        assert response.objects[0].error.code == 422
        assert response.objects[0].error.message == "size mismatch"
        assert response.objects[0].actions is None
        assert storage.url_calls == []

    async def test_upload_missing_object(self, processor, storage):
        """Test that an absent object gets a signed PUT action and a verify action."""
        response = await processor.process(
            batch("upload", (OID_B, 0)),
            verify_href="http://testserver/objects/verify",
            authorization="Basic abc",
        )
        obj = response.objects[0]

        assert obj.error is None
        assert set(obj.actions) == {"upload", "verify"}
        upload = obj.actions["upload"]
        assert upload.method == "PUT"
        assert upload.expires_at > datetime.now(timezone.utc)
        assert upload.header == {"Content-Type": "application/octet-stream"}
        verify = obj.actions["verify"]
        assert verify.href == "http://testserver/objects/verify"
        assert verify.header == {"Authorization": "Basic abc"}
        assert storage.url_calls == [(storage_key(OID_B), TransferOperation.upload, 0)]

    async def test_upload_existing_object_is_skipped(self, processor, storage):
        """Test that an already stored object needs no transfer."""
        storage.objects[storage_key(OID_A)] = 10

        response = await processor.process(batch("upload", (OID_A, 10)))

        assert response.model_dump(exclude_none=True)["objects"] == [
            {"oid": OID_A, "size": 10}
        ]
        assert storage.url_calls == []

    @pytest.mark.parametrize("stored_size", [0, 9, 11, 10**12])
    async def test_upload_size_mismatch_is_rejected(self, processor, storage, stored_size):
        """Test that a stored object is never overwritten with other content."""
        storage.objects[storage_key(OID_A)] = stored_size

        response = await processor.process(batch("upload", (OID_A, 10)))

        assert response.objects[0].error.code == 422
        assert response.objects[0].error.message == "size mismatch"
        assert storage.url_calls == []

    async def test_invalid_oid_does_not_fail_batch(self, processor, storage):
        """Test that one invalid object leaves the rest of the batch intact."""
        storage.objects[storage_key(OID_A)] = 5

        response = await processor.process(
            batch("download", ("not-an-oid", 5), (OID_A, 5))
        )

        first, second = response.objects
        assert first.oid == "not-an-oid"
        assert first.error.code == 422
        assert first.error.message == "invalid object identifier"
        assert second.oid == OID_A
        assert second.actions["download"].method == "GET"
        assert storage.exists_calls == [storage_key(OID_A)]

    async def test_invalid_size_is_per_object(self, processor):
        """Test that negative and fractional sizes are per-object errors."""
        response = await processor.process(
            batch("upload", (OID_A, -1), (OID_B, 1.5), (OID_C, 3))
        )

        assert [o.error.message if o.error else None for o in response.objects] == [
            "invalid object size",
            "invalid object size",
            None,
        ]

    async def test_uppercase_oid_is_rejected(self, processor, storage):
        """Test that mixed case identifiers never reach storage."""
        response = await processor.process(batch("download", (OID_C.upper(), 1)))

        assert response.objects[0].error.message == "invalid object identifier"
        assert storage.exists_calls == []

    async def test_duplicate_oids_are_processed_independently(self, processor, storage):
        """Test that duplicates are neither merged nor dropped."""
        response = await processor.process(batch("upload", (OID_A, 1), (OID_A, 1)))

        assert [o.oid for o in response.objects] == [OID_A, OID_A]
        assert all("upload" in o.actions for o in response.objects)
        assert len(storage.exists_calls) == 2

    async def test_backend_error_is_per_object(self, processor, storage):
        """Test that a failing existence check only affects its object."""
        storage.broken.add(storage_key(OID_A))
        storage.objects[storage_key(OID_B)] = 2

        response = await processor.process(batch("download", (OID_A, 1), (OID_B, 2)))

        first, second = response.objects
        assert first.error.code == 503
        assert first.error.message == "storage backend unavailable"
        assert second.actions["download"].href.endswith("signature=fake")

    async def test_backend_timeout_is_per_object(self, processor, storage):
        """Test that a hanging existence check becomes an error, not a hang."""
        storage.slow.add(storage_key(OID_A))

        response = await processor.process(batch("upload", (OID_A, 1), (OID_B, 2)))

        assert response.objects[0].error.code == 503
        assert "upload" in response.objects[1].actions

    async def test_signing_failure_is_per_object(self, processor, storage):
        """Test that a failing URL signature only affects its object."""
        storage.unsignable.add(storage_key(OID_A))

        response = await processor.process(batch("upload", (OID_A, 1), (OID_B, 2)))

        assert response.objects[0].error.code == 503
        assert "upload" in response.objects[1].actions

    async def test_response_keeps_request_order(self, authenticator):
        """Test that lookups finishing out of order are reported in request order."""
        oids = [f"{i:064x}" for i in range(12)]
        keys = [storage_key(oid) for oid in oids]
        # Earlier objects answer later, so lookups finish in reverse order.
        storage = FakeStorage(
            objects={key: 1 for key in keys[::2]},
            delays={key: (len(keys) - i) * 0.01 for i, key in enumerate(keys)},
        )
        processor = BatchProcessor(authenticator, storage, max_concurrency=len(oids))

        response = await processor.process(batch("download", *[(oid, 1) for oid in oids]))

        assert storage.completed == keys[::-1]
        assert [o.oid for o in response.objects] == oids
        for i, obj in enumerate(response.objects):
            if i % 2:
                assert obj.error.code == 404
            else:
                assert "download" in obj.actions
                assert obj.actions["download"].href.startswith(
                    f"https://storage.example.com/{keys[i]}?"
                )

    async def test_concurrency_is_bounded(self, authenticator):
        """Test that no more than max_concurrency lookups are in flight."""
        storage = FakeStorage()
        processor = BatchProcessor(authenticator, storage, max_concurrency=3)

        await processor.process(batch("upload", *[(f"{i:064x}", 1) for i in range(20)]))

        assert len(storage.exists_calls) == 20
        assert 1 <= storage.max_in_flight <= 3

    async def test_key_prefix(self, authenticator, storage):
        """Test that the configured prefix is used for every storage key."""
        processor = BatchProcessor(authenticator, storage, key_prefix="repo/lfs")

        await processor.process(batch("upload", (OID_C, 1)))

        assert storage.exists_calls == [f"repo/lfs/01/23/{OID_C}"]

    async def test_authorize(self, processor, authenticator, auth_header):
        """Test that authorization consults the authenticator once."""
        assert (await processor.authorize(auth_header)).allowed
        assert len(authenticator.calls) == 1

        denied = await processor.authorize(basic_auth("alice", "wrong"))
        assert not denied.allowed
        assert len(authenticator.calls) == 2

    async def test_authorize_malformed_credential(self, processor, authenticator):
        """Test that malformed credentials are denied without asking the authenticator."""
        for header in (None, "Bearer abc", "Basic ???"):
            assert not (await processor.authorize(header)).allowed
        assert authenticator.calls == []

    async def test_authorize_timeout_denies(self, storage, auth_header):
        """Test that a slow authenticator is a denial."""
        processor = BatchProcessor(FakeAuthenticator(delay=5), storage, timeout=0.05)
        assert not (await processor.authorize(auth_header)).allowed

    async def test_verify(self, processor, storage):
        """Test verification of uploaded objects."""
        storage.objects[storage_key(OID_A)] = 10

        assert await processor.verify(OID_A, 10) is None
        assert (await processor.verify(OID_A, 11)).code == 422
        assert (await processor.verify(OID_B, 10)).code == 404
        assert (await processor.verify("xyz", 10)).code == 422


class TestBatchAPI:
    """Tests for the HTTP endpoints."""

    async def test_download_not_found(self, client, auth_header):
        """Test the not-found scenario end to end."""
        response = await client.post(
            "/objects/batch",
            json={"operation": "download", "objects": [{"oid": OID_A, "size": 10}]},
            headers={"Authorization": auth_header, "Content-Type": LFS_CONTENT_TYPE},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith(LFS_CONTENT_TYPE)
        body = response.json()
        assert body["transfer"] == "basic"
        assert body["hash_algo"] == "sha256"
        assert body["objects"] == [
            {"oid": OID_A, "size": 10, "error": {"code": 404, "message": "object not found"}}
        ]

    async def test_upload_absent_object(self, client, auth_header):
        """Test the upload scenario end to end."""
        response = await client.post(
            "/objects/batch",
            json={"operation": "upload", "objects": [{"oid": OID_B, "size": 0}]},
            headers={"Authorization": auth_header, "Content-Type": LFS_CONTENT_TYPE},
        )

        assert response.status_code == 200
        obj = find_object(response.json()["objects"], OID_B)
        upload = obj["actions"]["upload"]
        assert upload["method"] == "PUT"
        assert upload["expires_in"] == 900
        expires_at = datetime.fromisoformat(upload["expires_at"].replace("Z", "+00:00"))
        assert expires_at > datetime.now(timezone.utc)
        verify = obj["actions"]["verify"]
        assert verify["href"] == "http://testserver/objects/verify"
        assert verify["header"] == {"Authorization": auth_header}

    async def test_missing_credentials(self, client, storage, authenticator):
        """Test that requests without credentials are rejected before storage is used."""
        response = await client.post(
            "/objects/batch",
            json={"operation": "download", "objects": [{"oid": OID_A, "size": 1}]},
        )

        assert response.status_code == 401
        assert response.headers["lfs-authenticate"] == 'Basic realm="Git LFS"'
        assert response.json() == {"message": "Unauthorized"}
        assert authenticator.calls == []
        assert storage.exists_calls == []
        assert storage.url_calls == []

    async def test_denied_batch_touches_no_storage(self, client, storage, authenticator):
        """Test that a denied batch of many objects makes zero storage calls."""
        objects = [{"oid": f"{i:064x}", "size": i} for i in range(10)]
        response = await client.post(
            "/objects/batch",
            json={"operation": "upload", "objects": objects},
            headers={"Authorization": basic_auth("alice", "wrong")},
        )

        assert response.status_code == 401
        assert "objects" not in response.json()
        assert len(authenticator.calls) == 1
        assert storage.exists_calls == []
        assert storage.url_calls == []

    async def test_authentication_precedes_body_parsing(self, client, authenticator):
        """Test that an unauthenticated malformed request reports 401, not 422."""
        response = await client.post("/objects/batch", content=b"{not json")
        assert response.status_code == 401

    @pytest.mark.parametrize(
        "body",
        [
            b"{not json",
            b"[]",
            b'{"objects": [{"oid": "' + b"a" * 64 + b'", "size": 1}]}',
            b'{"operation": "delete", "objects": [{"oid": "' + b"a" * 64 + b'", "size": 1}]}',
            b'{"operation": "upload", "objects": []}',
            b'{"operation": "upload"}',
            b'{"operation": "upload", "objects": [{"size": 1}]}',
        ],
    )
    async def test_malformed_requests(self, client, auth_header, storage, body):
        """Test that malformed bodies fail the whole request."""
        response = await client.post(
            "/objects/batch",
            content=body,
            headers={"Authorization": auth_header, "Content-Type": LFS_CONTENT_TYPE},
        )

        assert response.status_code == 422
        assert response.headers["content-type"].startswith(LFS_CONTENT_TYPE)
        assert response.json()["message"].startswith("Invalid request body")
        assert storage.exists_calls == []

    async def test_unsupported_hash_algorithm(self, client, auth_header):
        """Test that only sha256 object identifiers are accepted."""
        response = await client.post(
            "/objects/batch",
            json={
                "operation": "download",
                "objects": [{"oid": OID_A, "size": 1}],
                "hash_algo": "sha512",
            },
            headers={"Authorization": auth_header},
        )
        assert response.status_code == 409

    async def test_unsupported_transfer_adapter(self, client, auth_header):
        """Test that clients must accept the basic transfer adapter."""
        response = await client.post(
            "/objects/batch",
            json={
                "operation": "download",
                "objects": [{"oid": OID_A, "size": 1}],
                "transfers": ["ssh"],
            },
            headers={"Authorization": auth_header},
        )
        assert response.status_code == 422

    async def test_ref_is_accepted(self, client, auth_header):
        """Test that the optional ref context does not affect the response."""
        response = await client.post(
            "/objects/batch",
            json={
                "operation": "upload",
                "objects": [{"oid": OID_A, "size": 1}],
                "ref": {"name": "refs/heads/main"},
                "transfers": ["lfs-standalone-file", "basic"],
            },
            headers={"Authorization": auth_header},
        )
        assert response.status_code == 200
        assert "upload" in response.json()["objects"][0]["actions"]

    async def test_mixed_batch(self, client, auth_header, storage):
        """Test an invalid object followed by a downloadable one."""
        storage.objects[storage_key(OID_A)] = 3
        response = await client.post(
            "/objects/batch",
            json={
                "operation": "download",
                "objects": [{"oid": "A" * 64, "size": 3}, {"oid": OID_A, "size": 3}],
            },
            headers={"Authorization": auth_header},
        )

        first, second = response.json()["objects"]
        assert first["error"] == {"code": 422, "message": "invalid object identifier"}
        assert "actions" not in first
        assert second["actions"]["download"]["method"] == "GET"
        assert "error" not in second

    @pytest.mark.parametrize("size", [True, False, "10", "1e1", None, [10], 2.5])
    async def test_non_numeric_size_is_per_object(self, client, auth_header, storage, size):
        """Test that sizes which are not JSON integers are never coerced."""
        storage.objects[storage_key(OID_A)] = 1
        response = await client.post(
            "/objects/batch",
            json={
                "operation": "download",
                "objects": [{"oid": OID_A, "size": size}, {"oid": OID_B, "size": 4}],
            },
            headers={"Authorization": auth_header},
        )

        assert response.status_code == 200
        first, second = response.json()["objects"]
        assert first["error"] == {"code": 422, "message": "invalid object size"}
        assert "actions" not in first
        assert second["error"]["code"] == 404
        assert storage.exists_calls == [storage_key(OID_B)]
        assert storage.url_calls == []

    async def test_integral_float_size_is_accepted(self, client, auth_header, storage):
        """Test that 10.0 is the same size as 10."""
        storage.objects[storage_key(OID_A)] = 10
        response = await client.post(
            "/objects/batch",
            json={"operation": "download", "objects": [{"oid": OID_A, "size": 10.0}]},
            headers={"Authorization": auth_header},
        )

        assert "download" in response.json()["objects"][0]["actions"]

    async def test_verify_endpoint(self, client, auth_header, storage):
        """Test the verify endpoint."""
        storage.objects[storage_key(OID_A)] = 7
        headers = {"Authorization": auth_header, "Content-Type": LFS_CONTENT_TYPE}

        ok = await client.post(
            "/objects/verify", json={"oid": OID_A, "size": 7}, headers=headers
        )
        assert ok.status_code == 200

        missing = await client.post(
            "/objects/verify", json={"oid": OID_B, "size": 7}, headers=headers
        )
        assert missing.status_code == 404
        assert missing.json() == {"message": "object not found"}

        mismatch = await client.post(
            "/objects/verify", json={"oid": OID_A, "size": 8}, headers=headers
        )
        assert mismatch.status_code == 422

        boolean = await client.post(
            "/objects/verify", json={"oid": OID_A, "size": True}, headers=headers
        )
        assert boolean.status_code == 422
        assert boolean.json() == {"message": "invalid object size"}

    async def test_verify_requires_authentication(self, client, storage):
        """Test that verification is authenticated too."""
        response = await client.post("/objects/verify", json={"oid": OID_A, "size": 7})
        assert response.status_code == 401
        assert storage.exists_calls == []

    async def test_health_and_metrics(self, client, auth_header):
        """Test the probes and the metrics endpoint."""
        assert (await client.get("/health/liveness")).json() == {"status": "OK"}
        readiness = (await client.get("/health/readiness")).json()
        assert readiness["detail"] == {"authenticator": "fake", "storage": "fake"}

        await client.post(
            "/objects/batch",
            json={"operation": "download", "objects": [{"oid": OID_A, "size": 1}]},
            headers={"Authorization": auth_header},
        )
        metrics = await client.get("/metrics")
        assert metrics.status_code == 200
        assert "lfshost_batch_requests_total" in metrics.text
