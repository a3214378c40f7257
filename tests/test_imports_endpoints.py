from uuid import uuid4

import pytest


def contractor_rows(count: int) -> list[dict]:
    return [{"place_id": f"ChIJ{i:04d}", "name": f"Contractor {i}"} for i in range(count)]


@pytest.fixture
async def import_job(async_client, registered_row_processor):
    response = await async_client.post(
        "/v1/imports",
        json={"rows": contractor_rows(120), "filename": "contractors.json"},
        headers={"X-User-ID": "importer"},
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


class TestCreateImport:
    async def test_create_import(self, import_job):
        assert import_job["status"] == "pending"
        assert import_job["kind"] == "contractor_import"
        assert import_job["total_rows"] == 120
        assert import_job["processed_rows"] == 0
        assert import_job["progress_percentage"] == 0.0
        assert import_job["created_by"] == "importer"
        assert "raw_data" not in import_job

    async def test_unknown_kind(self, async_client, registered_row_processor):
        response = await async_client.post(
            "/v1/imports", json={"rows": contractor_rows(1), "kind": "reviews"}
        )
        assert response.status_code == 422

    async def test_empty_rows(self, async_client, registered_row_processor):
        response = await async_client.post("/v1/imports", json={"rows": []})
        assert response.status_code == 422


class TestProcessImport:
    async def test_process_until_complete(self, async_client, import_job):
        job_id = import_job["id"]

        seen = []
        for _ in range(3):
            response = await async_client.post(
                f"/v1/imports/{job_id}/process", params={"batch_size": 50}
            )
            assert response.status_code == 200, response.text
            seen.append(response.json()["data"]["job"])

        assert [s["processed_rows"] for s in seen] == [50, 100, 120]
        assert [s["is_complete"] for s in seen] == [False, False, True]
        assert seen[-1]["status"] == "completed"

        response = await async_client.post(f"/v1/imports/{job_id}/process")
        data = response.json()["data"]
        assert data["batch"]["processed"] == 0
        assert data["job"]["is_complete"] is True

    async def test_batch_result_counts(self, async_client, import_job):
        response = await async_client.post(
            f"/v1/imports/{import_job['id']}/process", params={"batch_size": 10}
        )

        batch = response.json()["data"]["batch"]
        assert batch["processed"] == 10
        assert batch["imported"] == 10
        assert batch["errors"] == []

    async def test_batch_size_out_of_range(self, async_client, import_job):
        response = await async_client.post(
            f"/v1/imports/{import_job['id']}/process", params={"batch_size": 500}
        )
        assert response.status_code == 422

    async def test_process_cancelled_import(self, async_client, import_job):
        await async_client.post(f"/v1/imports/{import_job['id']}/cancel")

        response = await async_client.post(f"/v1/imports/{import_job['id']}/process")

        assert response.status_code == 400
        assert "cancelled" in response.json()["error"]["message"]

    async def test_process_missing_import(self, async_client, registered_row_processor):
        response = await async_client.post(f"/v1/imports/{uuid4()}/process")
        assert response.status_code == 404


class TestReadImports:
    async def test_detail_includes_errors(self, async_client, registered_row_processor):
        rows = contractor_rows(4)
        rows[2] = {"place_id": "ChIJbroken", "fail": True, "reason": "no phone number"}
        response = await async_client.post("/v1/imports", json={"rows": rows})
        job_id = response.json()["data"]["id"]

        await async_client.post(f"/v1/imports/{job_id}/process")
        response = await async_client.get(f"/v1/imports/{job_id}")

        data = response.json()["data"]
        assert data["status"] == "completed"
        assert data["error_count"] == 1
        assert data["errors"] == [
            {
                "row_index": 2,
                "external_identifier": "ChIJbroken",
                "message": "no phone number",
            }
        ]

    async def test_list_imports(self, async_client, import_job):
        response = await async_client.get("/v1/imports", params={"status": "pending"})

        data = response.json()["data"]
        assert data["total"] == 1
        assert data["jobs"][0]["id"] == import_job["id"]

    async def test_cancel_twice(self, async_client, import_job):
        response = await async_client.post(f"/v1/imports/{import_job['id']}/cancel")
        assert response.json()["data"]["status"] == "cancelled"

        response = await async_client.post(f"/v1/imports/{import_job['id']}/cancel")
        assert response.status_code == 409
