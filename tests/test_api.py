"""
Tests for the HTTP trigger and status endpoints.
"""

import json
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from guidebook_pipeline.main import app, get_services


@pytest.fixture
def client(services):
    """Create a test client whose endpoints use the test services."""
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def project_id(client):
    response = client.post(
        "/projects",
        json={"title": "Porto", "subtitle": "Food and Wine", "author": "B. Traveller", "number_of_chapters": 4},
    )
    assert response.status_code == 201
    return response.json()["id"]


def run_book_job(services):
    assert services.worker("book-generation").run_once()


def staged_files(services):
    staging_root = Path(services.config.paths.staging_dir)
    if not staging_root.exists():
        return []
    return [path for path in staging_root.rglob("*") if path.is_file()]


class TestHealthEndpoint:
    def test_health_check(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestProjectEndpoints:
    """Tests for project creation and lookup."""

    def test_create_project_starts_in_draft(self, client):
        response = client.post("/projects", json={"title": "Porto", "author": "B. Traveller"})

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "DRAFT"
        assert data["base_language"] == "ENGLISH"
        assert data["number_of_chapters"] == 10

    def test_create_project_validates_input(self, client):
        response = client.post("/projects", json={"title": "Porto"})
        assert response.status_code == 422

    def test_get_project(self, client, project_id):
        response = client.get(f"/projects/{project_id}")
        assert response.status_code == 200
        assert response.json()["title"] == "Porto"

    def test_get_unknown_project(self, client):
        response = client.get("/projects/does-not-exist")
        assert response.status_code == 404


class TestGenerateEndpoint:
    """Tests for triggering generation and following its progress."""

    def test_generate_runs_pipeline(self, client, services, project_id):
        response = client.post(
            f"/projects/{project_id}/generate",
            files=[
                ("images", ("tram.png", b"tram bytes", "image/png")),
                ("images", ("river.jpg", b"river bytes", "image/jpeg")),
                ("map_image", ("map.png", b"map bytes", "image/png")),
            ],
            data={
                "captions": json.dumps(["Tram 28", "Douro"]),
                "map_caption": "Old town",
                "parameters": json.dumps({"formats": ["PDF"], "target_languages": ["GERMAN", "FRENCH"]}),
            },
        )
        assert response.status_code == 202
        accepted = response.json()
        assert accepted["status"] == "DRAFT"

        queued = client.get(f"/jobs/{accepted['job_id']}")
        assert queued.status_code == 200
        assert queued.json()["status"] == "waiting"

        run_book_job(services)

        job = client.get(f"/jobs/{accepted['job_id']}").json()
        assert job["status"] == "completed"
        assert job["progress"]["percent"] == 100

        project = client.get(f"/projects/{project_id}").json()
        assert project["status"] == "COMPLETED"

        documents = client.get(f"/projects/{project_id}/documents").json()
        assert sorted((doc["format"], doc["language"]) for doc in documents) == [
            ("PDF", "ENGLISH"),
            ("PDF", "FRENCH"),
            ("PDF", "GERMAN"),
        ]

        assets = services.projects.list_assets(project_id)
        assert [asset.caption for asset in assets] == ["Old town", "Tram 28", "Douro"]

    def test_generate_without_images(self, client, services, project_id):
        response = client.post(
            f"/projects/{project_id}/generate",
            data={"parameters": json.dumps({"formats": ["DOCX"], "target_languages": []})},
        )
        assert response.status_code == 202

        run_book_job(services)

        documents = client.get(f"/projects/{project_id}/documents").json()
        assert [(doc["format"], doc["language"]) for doc in documents] == [("DOCX", "ENGLISH")]

    def test_duplicate_trigger_conflicts(self, client, project_id):
        data = {"parameters": json.dumps({"formats": ["PDF"]})}
        assert client.post(f"/projects/{project_id}/generate", data=data).status_code == 202

        response = client.post(f"/projects/{project_id}/generate", data=data)
        assert response.status_code == 409

    def test_invalid_parameters_json(self, client, project_id):
        response = client.post(f"/projects/{project_id}/generate", data={"parameters": "{not json"})
        assert response.status_code == 400
        assert "Invalid parameters JSON" in response.json()["detail"]

    def test_invalid_parameter_values(self, client, project_id):
        response = client.post(
            f"/projects/{project_id}/generate", data={"parameters": json.dumps({"formats": ["EPUB"]})}
        )
        assert response.status_code == 400

    def test_non_image_upload_rejected(self, client, project_id):
        response = client.post(
            f"/projects/{project_id}/generate",
            files=[("images", ("notes.txt", b"text", "text/plain"))],
            data={"parameters": "{}"},
        )
        assert response.status_code == 400

    def test_generate_unknown_project(self, client):
        response = client.post("/projects/missing/generate", data={"parameters": "{}"})
        assert response.status_code == 404


    @pytest.mark.parametrize("captions", ['"Tram 28"', '{"tram.png": "Tram 28"}', "3", '["Tram 28", 3]'])
    def test_captions_must_be_a_list_of_strings(self, client, services, project_id, captions):
        response = client.post(
            f"/projects/{project_id}/generate",
            files=[("images", ("tram.png", b"tram bytes", "image/png"))],
            data={"captions": captions, "parameters": "{}"},
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "captions must be a JSON list of strings"
        assert staged_files(services) == []
        assert services.queue.metrics("book-generation").total == 0

    def test_staged_uploads_removed_after_run(self, client, services, project_id):
        response = client.post(
            f"/projects/{project_id}/generate",
            files=[
                ("images", ("tram.png", b"tram bytes", "image/png")),
                ("map_image", ("map.png", b"map bytes", "image/png")),
            ],
            data={"parameters": json.dumps({"formats": ["PDF"], "target_languages": []})},
        )
        assert response.status_code == 202
        assert len(staged_files(services)) == 2

        run_book_job(services)

        assert staged_files(services) == []
        assert len(services.projects.list_assets(project_id)) == 2

    def test_rejected_trigger_leaves_nothing_staged(self, client, services, project_id):
        assert client.post(f"/projects/{project_id}/generate", data={"parameters": "{}"}).status_code == 202

        response = client.post(
            f"/projects/{project_id}/generate",
            files=[("images", ("tram.png", b"tram bytes", "image/png"))],
            data={"parameters": "{}"},
        )

        assert response.status_code == 409
        assert staged_files(services) == []


class TestStatusEndpoints:
    def test_unknown_job_reports_not_found(self, client):
        response = client.get("/jobs/unknown")
        assert response.status_code == 404
        assert response.json()["status"] == "not_found"

    def test_queue_metrics(self, client, project_id):
        client.post(f"/projects/{project_id}/generate", data={"parameters": "{}"})

        response = client.get("/queues/book-generation/metrics")
        assert response.status_code == 200
        data = response.json()
        assert data["waiting"] == 1
        assert data["active"] == 0
        assert data["total"] == 1

    def test_unknown_queue_metrics(self, client):
        response = client.get("/queues/nope/metrics")
        assert response.status_code == 404


class TestDocumentUrls:
    """Document listings against S3 storage, whose download URLs expire."""

    @pytest.fixture
    def services(self, s3_services):
        return s3_services

    def test_listing_presigns_fresh_urls(self, client, services, fake_s3, clock, project_id):
        response = client.post(
            f"/projects/{project_id}/generate",
            data={"parameters": json.dumps({"formats": ["PDF"], "target_languages": []})},
        )
        assert response.status_code == 202
        run_book_job(services)

        clock.advance(2 * 3600)

        record = services.projects.list_documents(project_id)[0]
        assert fake_s3.is_expired(record.url)
        documents = client.get(f"/projects/{project_id}/documents").json()
        assert [doc["filename"] for doc in documents] == [record.filename]
        assert not fake_s3.is_expired(documents[0]["url"])
