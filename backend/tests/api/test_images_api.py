from fastapi.testclient import TestClient

from backend.app.api.main import app
from backend.app.api.routes.images import get_pipeline
from backend.app.db import models
from backend.app.db.session import session_scope


client = TestClient(app)


class StubPipeline:
    def __init__(self):
        self.calls = []
        self.closed = False

    async def process_batch(self, vehicle_ids=None, batch_size=5, vendor_name=None, job_id=None):
        self.calls.append({"vehicle_ids": vehicle_ids, "batch_size": batch_size, "vendor_name": vendor_name})
        with session_scope() as session:
            job = session.get(models.ImageProcessingJob, job_id)
            job.status = "completed"
            job.total_vehicles = job.vehicles_processed = 1
            job.images_uploaded = 3
        return {"job_id": job_id}

    async def aclose(self):
        self.closed = True


def teardown_function():
    app.dependency_overrides.clear()


def test_process_starts_background_job():
    stub = StubPipeline()
    app.dependency_overrides[get_pipeline] = lambda: stub

    resp = client.post("/images/process", json={"batch_size": 3, "vendor_name": "Nani Auto"})

    assert resp.status_code == 202
    body = resp.json()
    assert body["status"] == "pending"
    assert stub.calls == [{"vehicle_ids": None, "batch_size": 3, "vendor_name": "Nani Auto"}]
    assert stub.closed

    job = client.get(f"/images/jobs/{body['job_id']}").json()
    assert job["status"] == "completed"
    assert job["images_uploaded"] == 3
    assert job["progress"] == 100.0

    jobs = client.get("/images/jobs").json()["jobs"]
    assert [j["job_id"] for j in jobs] == [body["job_id"]]


def test_process_rejects_out_of_range_batch_size():
    app.dependency_overrides[get_pipeline] = StubPipeline
    assert client.post("/images/process", json={"batch_size": 0}).status_code == 422
    assert client.post("/images/process", json={"batch_size": 101}).status_code == 422


def test_unknown_job_is_404():
    assert client.get("/images/jobs/does-not-exist").status_code == 404


def test_status_reports_migration_counts():
    with session_scope() as session:
        session.add(models.Vendor(id="naniauto", name="Nani Auto", source_type="html", adapter="B_DETAIL"))
        session.flush()
        session.add(
            models.Vehicle(
                vendor_id="naniauto",
                make="Honda",
                model="Civic",
                year=2019,
                images=["media-1", "https://naniauto.com/uploads/2.jpg"],
            )
        )

    stats = client.get("/images/status").json()

    assert stats["total_vehicles"] == 1
    assert stats["partially_processed"] == 1
    assert stats["external_images"] == 1
    assert stats["migrated_images"] == 1
