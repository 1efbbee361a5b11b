import datetime
from typing import Dict, List, Optional

import pytest

from core.config import StorageConfig
from core.errors import AnalysisError, InvalidRequestError, RecordNotFoundError, StorageError
from core.models import FileStatus, ImageAnalysis, IncomingFile, StoredObject, UploadedFileRecord, UploadOptions
from core.storage import StorageProvider
from services.caption_api.app.upload_service import UploadService

USER = "user-1"
OTHER_USER = "user-2"
PNG = b"\x89PNG\r\n\x1a\n" + b"0" * 64


class FakeStorage(StorageProvider):
    """In-memory bucket issuing a new signed URL on every request."""

    def __init__(self, events: List[str]):
        self.events = events
        self.objects: Dict[str, bytes] = {}
        self.issued = 0
        self.fail_upload = False

    def _sign(self, path: str) -> str:
        self.issued += 1
        return f"https://storage.test/{path}?token=t{self.issued}"

    async def upload(self, data: bytes, path: str, options: Optional[UploadOptions] = None) -> StoredObject:
        if self.fail_upload:
            raise StorageError("Storage upload failed: bucket unavailable")
        self.events.append("storage.upload")
        self.objects[path] = data
        return StoredObject(
            path=path,
            url=self._sign(path),
            expires_at=datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(hours=1),
        )

    async def delete(self, path: str) -> bool:
        self.events.append("storage.delete")
        self.objects.pop(path, None)
        return True

    async def delete_many(self, paths: List[str]) -> bool:
        self.events.append("storage.delete_many")
        for path in paths:
            self.objects.pop(path, None)
        return True

    async def url_for(self, path: str) -> str:
        if path not in self.objects:
            raise StorageError("Signed URL creation failed: object not found")
        return self._sign(path)

    async def exists(self, path: str) -> bool:
        return path in self.objects

    async def download(self, path: str) -> bytes:
        return self.objects[path]


class FakeRepository:
    """Owner-filtered row store with the same surface as FileRepository."""

    def __init__(self, events: List[str]):
        self.events = events
        self.rows: Dict[str, UploadedFileRecord] = {}

    async def create(self, record: UploadedFileRecord) -> UploadedFileRecord:
        self.events.append("db.create")
        created = UploadedFileRecord(**{**record.model_dump(), "id": f"file-{len(self.rows) + 1}"})
        self.rows[created.id] = created
        return created

    async def find_by_id(self, file_id: str, user_id: str) -> UploadedFileRecord:
        record = self.rows.get(file_id)
        if record is None or record.user_id != user_id:
            raise RecordNotFoundError()
        return record

    async def update(self, file_id: str, user_id: str, updates: dict) -> UploadedFileRecord:
        record = await self.find_by_id(file_id, user_id)
        self.events.append("db.update")
        updated = UploadedFileRecord(**{**record.model_dump(), **updates})
        self.rows[file_id] = updated
        return updated

    async def delete(self, file_id: str, user_id: str) -> bool:
        self.events.append("db.delete")
        await self.find_by_id(file_id, user_id)
        del self.rows[file_id]
        return True

    async def bulk_delete(self, file_ids: List[str], user_id: str) -> bool:
        self.events.append("db.bulk_delete")
        for file_id in file_ids:
            if file_id in self.rows and self.rows[file_id].user_id == user_id:
                del self.rows[file_id]
        return True


class FakeVision:
    """Reads the image only through the URL it is given; rejected URLs behave as expired."""

    def __init__(self, storage: Optional[FakeStorage] = None):
        self.storage = storage
        self.seen_urls: List[str] = []
        self.rejected_urls = set()
        self.failing_content = set()
        self.fail = False

    def _content_behind(self, image_url: str) -> Optional[bytes]:
        if self.storage is None:
            return None
        path = image_url.split("?", 1)[0].replace("https://storage.test/", "", 1)
        return self.storage.objects.get(path)

    async def analyze_image(self, image_url, tag_style="neutral") -> ImageAnalysis:
        self.seen_urls.append(image_url)
        if self.fail or image_url in self.rejected_urls or self._content_behind(image_url) in self.failing_content:
            raise AnalysisError("Image URL not readable (HTTP 400)")
        return ImageAnalysis(description="A dog in a park.", tags=["dog", "park"], tag_style=tag_style)


@pytest.fixture
def events():
    return []


@pytest.fixture
def storage(events):
    return FakeStorage(events)


@pytest.fixture
def repository(events):
    return FakeRepository(events)


@pytest.fixture
def vision(storage):
    return FakeVision(storage)


@pytest.fixture
def service(storage, repository, vision):
    return UploadService(
        storage_provider=storage,
        vision_client=vision,
        file_repository=repository,
        config=StorageConfig(bucket="uploads", signed_url_expiry=3600),
        max_upload_size_mb=1,
        allowed_extensions=["jpg", "png"],
    )


def png(name="dog.png", content=PNG, mime_type="image/png"):
    return IncomingFile(original_name=name, content=content, mime_type=mime_type)


# --- Upload ---
@pytest.mark.asyncio
async def test_upload_writes_storage_before_database(service, events, storage, vision):
    outcome = await service.upload_and_analyze(png(), USER, "seo")

    assert events == ["storage.upload", "db.create", "db.update"]
    assert outcome.analysis_succeeded
    assert outcome.file.status == FileStatus.COMPLETED.value
    assert outcome.file.tags == ["dog", "park"]
    assert outcome.file.tag_style == "seo"
    assert outcome.file.filename == "dog.png"
    assert outcome.file.file_path.startswith(f"images/{USER}/")
    assert outcome.file.file_path in storage.objects
    assert vision.seen_urls == [outcome.file.signed_url]


@pytest.mark.asyncio
async def test_upload_without_analysis(service, vision):
    outcome = await service.upload_and_analyze(png(), USER, analyze=False)

    assert outcome.file.status == FileStatus.UPLOADED.value
    assert outcome.analysis is None
    assert vision.seen_urls == []


@pytest.mark.asyncio
async def test_ai_failure_keeps_object_and_marks_row_failed(service, storage, repository, vision):
    vision.fail = True

    outcome = await service.upload_and_analyze(png(), USER)

    assert not outcome.analysis_succeeded
    assert "HTTP 400" in outcome.analysis_error
    assert outcome.file.status == FileStatus.FAILED.value
    assert outcome.file.file_path in storage.objects
    assert repository.rows[outcome.file.id].status == FileStatus.FAILED.value


@pytest.mark.asyncio
async def test_storage_failure_creates_no_row(service, storage, repository):
    storage.fail_upload = True

    with pytest.raises(StorageError):
        await service.upload_and_analyze(png(), USER)
    assert repository.rows == {}


@pytest.mark.asyncio
@pytest.mark.parametrize("incoming, message", [
    (png(name="doc.pdf", mime_type="application/pdf"), "Only image files are allowed"),
    (png(name="dog.exe"), "Invalid file extension"),
    (png(content=b""), "File is empty or exceeds size limit"),
    (png(content=b"0" * (1024 * 1024 + 1)), "File is empty or exceeds size limit"),
])
async def test_validation_rejects_before_storage(service, storage, repository, incoming, message):
    with pytest.raises(InvalidRequestError) as exc_info:
        await service.upload_and_analyze(incoming, USER)

    assert exc_info.value.message == message
    assert storage.objects == {}
    assert repository.rows == {}


@pytest.mark.asyncio
async def test_bulk_upload_partial_success(service):
    bulk = await service.bulk_upload_and_analyze(
        [png(name="a.png"), png(name="b.pdf", mime_type="application/pdf"), png(name="c.jpg", mime_type="image/jpeg")],
        USER,
    )

    assert sorted(outcome.file.filename for outcome in bulk.results) == ["a.png", "c.jpg"]
    assert len(bulk.errors) == 1
    assert bulk.errors[0].filename == "b.pdf"
    assert bulk.errors[0].error == "Only image files are allowed"


@pytest.mark.asyncio
async def test_bulk_upload_isolates_single_ai_failure(service, storage, vision):
    broken = PNG + b"b"
    vision.failing_content.add(broken)

    bulk = await service.bulk_upload_and_analyze(
        [png(name="a.png", content=PNG + b"a"), png(name="b.png", content=broken), png(name="c.png", content=PNG + b"c")],
        USER,
    )

    assert bulk.errors == []
    by_name = {outcome.file.filename: outcome for outcome in bulk.results}
    assert sorted(by_name) == ["a.png", "b.png", "c.png"]
    for name in ("a.png", "c.png"):
        assert by_name[name].analysis_succeeded
        assert by_name[name].file.status == FileStatus.COMPLETED.value
    assert not by_name["b.png"].analysis_succeeded
    assert by_name["b.png"].file.status == FileStatus.FAILED.value
    assert storage.objects[by_name["b.png"].file.file_path] == broken


@pytest.mark.asyncio
async def test_delete_many_then_exists_is_false(service, storage):
    first = await service.upload_and_analyze(png(name="a.png"), USER, analyze=False)
    second = await service.upload_and_analyze(png(name="b.png"), USER, analyze=False)
    paths = [first.file.file_path, second.file.file_path]
    assert all([await storage.exists(path) for path in paths])

    await storage.delete_many(paths)

    for path in paths:
        assert await storage.exists(path) is False


# --- Re-analysis ---
@pytest.mark.asyncio
async def test_reanalyze_uses_fresh_url(service, vision):
    uploaded = await service.upload_and_analyze(png(), USER, analyze=False)
    old_url = uploaded.file.signed_url
    vision.rejected_urls.add(old_url)

    outcome = await service.reanalyze(uploaded.file.id, USER, "playful")

    assert vision.seen_urls[-1] != old_url
    assert outcome.file.signed_url == vision.seen_urls[-1]
    assert outcome.file.status == FileStatus.COMPLETED.value
    assert outcome.file.tag_style == "playful"
    assert outcome.file.description == "A dog in a park."
    assert not outcome.file.url_expired()


@pytest.mark.asyncio
async def test_reanalyze_failure_marks_row_failed_and_raises(service, repository, vision):
    uploaded = await service.upload_and_analyze(png(), USER, analyze=False)
    vision.fail = True

    with pytest.raises(AnalysisError):
        await service.reanalyze(uploaded.file.id, USER)
    assert repository.rows[uploaded.file.id].status == FileStatus.FAILED.value


@pytest.mark.asyncio
async def test_reanalyze_other_users_file(service, vision):
    uploaded = await service.upload_and_analyze(png(), USER, analyze=False)

    with pytest.raises(RecordNotFoundError):
        await service.reanalyze(uploaded.file.id, OTHER_USER)
    assert vision.seen_urls == []


@pytest.mark.asyncio
async def test_reanalyze_non_image(service, repository):
    repository.rows["file-9"] = UploadedFileRecord(
        id="file-9", filename="notes.txt", file_path=f"images/{USER}/notes.txt", mime_type="text/plain", user_id=USER,
    )
    with pytest.raises(InvalidRequestError):
        await service.reanalyze("file-9", USER)


@pytest.mark.asyncio
async def test_bulk_reanalyze_collects_errors(service):
    uploaded = await service.upload_and_analyze(png(), USER, analyze=False)

    bulk = await service.bulk_reanalyze([uploaded.file.id, "missing"], USER)

    assert [outcome.file.id for outcome in bulk.results] == [uploaded.file.id]
    assert bulk.errors[0].id == "missing"
    assert bulk.errors[0].error == "File not found or access denied"


# --- URL refresh ---
@pytest.mark.asyncio
async def test_refresh_file_url(service):
    uploaded = await service.upload_and_analyze(png(), USER, analyze=False)

    refreshed = await service.refresh_file_url(uploaded.file.id, USER)

    assert refreshed.signed_url != uploaded.file.signed_url
    assert refreshed.signed_url_expires_at > datetime.datetime.now(datetime.timezone.utc)


@pytest.mark.asyncio
async def test_refresh_file_urls_skips_failures(service, storage):
    first = await service.upload_and_analyze(png(name="a.png"), USER, analyze=False)
    second = await service.upload_and_analyze(png(name="b.png"), USER, analyze=False)
    del storage.objects[second.file.file_path]

    refreshed = await service.refresh_file_urls([first.file, second.file], USER)

    assert [record.id for record in refreshed] == [first.file.id]


@pytest.mark.asyncio
async def test_refresh_file_urls_stamps_updated_at(service):
    uploaded = await service.upload_and_analyze(png(), USER, analyze=False)
    assert uploaded.file.updated_at is None

    refreshed = await service.refresh_file_urls([uploaded.file], USER)

    assert refreshed[0].updated_at is not None
    assert refreshed[0].signed_url_expires_at is not None


# --- Delete ---
@pytest.mark.asyncio
async def test_delete_file_removes_object_then_row(service, events, storage, repository):
    uploaded = await service.upload_and_analyze(png(), USER, analyze=False)
    events.clear()

    assert await service.delete_file(uploaded.file.id, USER) is True
    assert events == ["storage.delete", "db.delete"]
    assert storage.objects == {}
    assert repository.rows == {}


@pytest.mark.asyncio
async def test_delete_file_of_other_user_touches_nothing(service, storage):
    uploaded = await service.upload_and_analyze(png(), USER, analyze=False)

    with pytest.raises(RecordNotFoundError):
        await service.delete_file(uploaded.file.id, OTHER_USER)
    assert uploaded.file.file_path in storage.objects


@pytest.mark.asyncio
async def test_bulk_delete_skips_invisible_ids(service, storage, repository):
    first = await service.upload_and_analyze(png(name="a.png"), USER, analyze=False)
    second = await service.upload_and_analyze(png(name="b.png"), USER, analyze=False)

    deleted = await service.bulk_delete_files([first.file.id, second.file.id, "someone-elses"], USER)

    assert deleted == 2
    assert storage.objects == {}
    assert repository.rows == {}


@pytest.mark.asyncio
async def test_bulk_delete_with_no_valid_ids(service, events):
    with pytest.raises(InvalidRequestError) as exc_info:
        await service.bulk_delete_files(["missing-1", "missing-2"], USER)
    assert exc_info.value.message == "No valid files to delete"
    assert "storage.delete_many" not in events
