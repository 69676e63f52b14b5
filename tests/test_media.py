"""
Media materializer: uploads, retries and partial failure.
"""

from unittest.mock import MagicMock

import pytest

from nocheck.core.media import (
    Failed,
    HttpMediaStore,
    InMemoryMediaStore,
    KeptInline,
    MediaMaterializer,
    MediaUploadError,
    Uploaded,
)
from nocheck.core.schema import FieldResponse

INLINE = "data:image/jpeg;base64," + "A" * 64


def make_materializer(store, **kwargs):
    sleeps = []
    materializer = MediaMaterializer(store, max_attempts=3, retry_delay=2, workers=2, sleep=sleeps.append, **kwargs)
    return materializer, sleeps


class TestMaterialize:
    """Test response rewriting."""

    def test_no_media_passes_through(self):
        materializer, _ = make_materializer(InMemoryMediaStore())
        responses = [FieldResponse(field_id=1, value_text="ok")]

        result = materializer.materialize(responses)

        assert result.all_uploaded is True
        assert result.responses == responses
        assert result.outcomes == []

    def test_inline_photos_are_uploaded(self):
        store = InMemoryMediaStore()
        materializer, _ = make_materializer(store)
        responses = [FieldResponse(field_id=5, value_json={"photos": [INLINE, INLINE]})]

        result = materializer.materialize(responses, name_prefix="abc")

        assert result.all_uploaded is True
        photos = result.responses[0].value_json["photos"]
        assert photos == ["https://media.local/abc_5_photo_0.jpg", "https://media.local/abc_5_photo_1.jpg"]
        assert result.responses[0].value_json["uploadedToDrive"] is True

    def test_legacy_list_shape_is_recognised(self):
        materializer, _ = make_materializer(InMemoryMediaStore())
        result = materializer.materialize([FieldResponse(field_id=5, value_json=[INLINE])])

        assert result.responses[0].value_json["photos"][0].startswith("https://media.local/")

    def test_existing_urls_count_as_uploaded(self):
        store = InMemoryMediaStore(always_fail=True)
        materializer, _ = make_materializer(store)
        url = "https://cdn.example.com/p.jpg"

        result = materializer.materialize([FieldResponse(field_id=5, value_json={"photos": [url]})])

        assert result.all_uploaded is True
        assert result.outcomes == [Uploaded(url)]
        assert store.attempts == 0

    def test_retry_then_success(self):
        store = InMemoryMediaStore(fail_times=2)
        materializer, sleeps = make_materializer(store)

        result = materializer.materialize([FieldResponse(field_id=5, value_json={"photos": [INLINE]})])

        assert result.all_uploaded is True
        assert store.attempts == 3
        assert sleeps == [2, 2]

    def test_partial_failure_keeps_inline_payload(self):
        """Failed uploads keep the inline data and flag the result."""
        store = InMemoryMediaStore(always_fail=True)
        materializer, sleeps = make_materializer(store)

        result = materializer.materialize([FieldResponse(field_id=5, value_json={"photos": [INLINE]})])

        assert result.all_uploaded is False
        assert isinstance(result.outcomes[0], Failed)
        assert result.responses[0].value_json == {"photos": [INLINE], "uploadedToDrive": False}
        assert store.attempts == 3
        assert len(sleeps) == 2

    def test_unknown_items_are_kept_inline(self):
        materializer, _ = make_materializer(InMemoryMediaStore())
        long_blob = "B" * 1500

        result = materializer.materialize([FieldResponse(field_id=5, value_json=[long_blob])])

        assert result.outcomes == [KeptInline("unknown media format")]
        assert result.all_uploaded is False

    def test_signature_is_uploaded(self):
        materializer, _ = make_materializer(InMemoryMediaStore())
        result = materializer.materialize([FieldResponse(field_id=9, value_json={"signature": INLINE})])

        assert result.responses[0].value_json["signature"].endswith("_9_signature_0.jpg")
        assert result.all_uploaded is True


class TestHttpMediaStore:
    """Test the HTTP upload client with a mocked session."""

    def test_upload_posts_image_and_file_name(self):
        session = MagicMock()
        session.post.return_value.status_code = 200
        session.post.return_value.json.return_value = {"success": True, "url": "https://drive/x.jpg"}
        store = HttpMediaStore(url="https://upload.example.com", session=session)

        assert store.upload(INLINE, "x.jpg") == "https://drive/x.jpg"
        _, kwargs = session.post.call_args
        assert kwargs["json"] == {"image": INLINE, "fileName": "x.jpg"}

    def test_http_error_raises(self):
        session = MagicMock()
        session.post.return_value.status_code = 500
        store = HttpMediaStore(url="https://upload.example.com", session=session)

        with pytest.raises(MediaUploadError):
            store.upload(INLINE, "x.jpg")

    def test_unconfigured_raises(self):
        store = HttpMediaStore(url="", session=MagicMock())
        with pytest.raises(MediaUploadError, match="not configured"):
            store.upload(INLINE, "x.jpg")
