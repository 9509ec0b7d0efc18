"""
Pytest configuration and fixtures for the guidebook pipeline tests.

Time is faked: the clock only moves when the supervisor (or a test) sleeps,
and every sleep first lets the in-process unit workers take one job each.
"""

import io
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

import pytest
from botocore.exceptions import ClientError

from guidebook_pipeline.asset_cache import AssetFetcher
from guidebook_pipeline.configuration import make_runtime_config
from guidebook_pipeline.exceptions import AssetFetchError
from guidebook_pipeline.models import (
    GenerationParameters,
    InlineAssetReference,
    Language,
    ProjectCreate,
    QueueName,
)
from guidebook_pipeline.services import build_services
from guidebook_pipeline.storage import S3BlobStorage
from guidebook_pipeline.worker import Worker

UNIT_QUEUES = [
    QueueName.CONTENT_GENERATION.value,
    QueueName.DOCUMENT_GENERATION.value,
    QueueName.DOCUMENT_TRANSLATION.value,
]


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class PumpingSleeper:
    """Stands in for time.sleep: runs each registered worker once, then advances the clock."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.workers: List[Worker] = []
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        for worker in self.workers:
            worker.run_once()
        self.clock.advance(seconds)


class FakeS3Client:
    """In-memory stand-in for a boto3 S3 client; presigned URLs carry their expiry time."""

    def __init__(self, clock=None):
        self.clock = clock or (lambda: 0.0)
        self.fail_upload = False
        self.uploaded: Dict[Any, Any] = {}
        self.deleted: List[Any] = []

    def upload_fileobj(self, fileobj, bucket, key, ExtraArgs=None):
        if self.fail_upload:
            raise ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject")
        self.uploaded[(bucket, key)] = (fileobj.read(), ExtraArgs)

    def get_object(self, Bucket, Key):
        if (Bucket, Key) not in self.uploaded:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "not found"}}, "GetObject")
        return {"Body": io.BytesIO(self.uploaded[(Bucket, Key)][0])}

    def generate_presigned_url(self, operation, Params=None, ExpiresIn=None):
        expires = int(self.clock() + ExpiresIn)
        return f"https://{Params['Bucket']}.s3.amazonaws.com/{Params['Key']}?Expires={expires}"

    def delete_object(self, Bucket, Key):
        self.uploaded.pop((Bucket, Key), None)
        self.deleted.append((Bucket, Key))

    def is_expired(self, url: str) -> bool:
        expires = parse_qs(urlparse(url).query)["Expires"][0]
        return self.clock() >= int(expires)


def deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def base_overrides(root: Path) -> Dict[str, Any]:
    return {
        "paths": {
            "database": str(root / "pipeline.db"),
            "staging_dir": str(root / "uploads"),
            "output_dir": str(root / "outputs"),
        },
        "storage": {"s3_bucket": ""},
        "logging": {"level": "DEBUG"},
    }


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper(clock):
    return PumpingSleeper(clock)


@pytest.fixture
def config_overrides() -> Dict[str, Any]:
    """Per-test configuration overrides; tests override this fixture or mutate it."""
    return {}


@pytest.fixture
def config(tmp_path, config_overrides):
    return make_runtime_config(deep_merge(base_overrides(tmp_path), config_overrides))


@pytest.fixture
def services(config, clock, sleeper):
    built = build_services(config, clock=clock, sleeper=sleeper)
    sleeper.workers = [built.worker(name) for name in UNIT_QUEUES]
    return built


@pytest.fixture
def make_project(services):
    def _make(title: str = "Lisbon", number_of_chapters: int = 5, base_language: Language = Language.ENGLISH):
        return services.projects.create_project(
            ProjectCreate(
                title=title,
                subtitle="A Walking Guide",
                author="A. Writer",
                base_language=base_language,
                number_of_chapters=number_of_chapters,
            )
        )

    return _make


@pytest.fixture
def staged_image(tmp_path):
    counter = {"n": 0}

    def _stage(name: Optional[str] = None, content: bytes = b"\x89PNG fake image", is_map: bool = False, caption=None):
        counter["n"] += 1
        filename = name or f"image-{counter['n']}.png"
        path = tmp_path / "staged" / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return InlineAssetReference(
            path=str(path),
            original_name=filename,
            mime_type="image/png",
            caption=caption,
            is_map=is_map,
        )

    return _stage


@pytest.fixture
def run_pipeline(services):
    """Trigger a project and process its book-generation job on the calling thread."""

    def _run(project_id: str, parameters: Optional[GenerationParameters] = None, assets=None) -> str:
        job_id = services.supervisor.request_generation(project_id, parameters, assets)
        book_worker = services.worker(QueueName.BOOK_GENERATION.value)
        assert book_worker.run_once()
        return job_id

    return _run


@pytest.fixture
def fake_s3(clock):
    return FakeS3Client(clock)


@pytest.fixture
def s3_services(config, clock, sleeper, fake_s3):
    """Services backed by S3 storage with expiring URLs and no network for asset downloads."""

    class OfflineFetcher(AssetFetcher):
        def fetch(self, url):
            raise AssetFetchError(url, "network access disabled")

    storage = S3BlobStorage("guides", prefix="books", presign_expiration=3600, client=fake_s3)
    built = build_services(config, clock=clock, sleeper=sleeper, storage=storage, fetcher=OfflineFetcher())
    sleeper.workers = [built.worker(name) for name in UNIT_QUEUES]
    return built
