"""
Media materializer.

Inline photo and signature payloads captured offline are uploaded to the media
store before a submission is committed. An item that cannot be uploaded keeps
its inline payload so nothing is lost; the caller flags the submission as not
fully uploaded.
"""

import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Union

from .config import MEDIA_RETRY_DELAY_SEC, MEDIA_UPLOAD_RETRIES, MEDIA_UPLOAD_URL, MEDIA_UPLOAD_WORKERS
from .http import REQUEST_TIMEOUT, build_session
from .schema import FieldResponse
from .values import extract_photos
from ..util.logging import logger


class MediaUploadError(Exception):
    pass


@dataclass(frozen=True)
class Uploaded:
    url: str


@dataclass(frozen=True)
class KeptInline:
    reason: str


@dataclass(frozen=True)
class Failed:
    reason: str


MediaOutcome = Union[Uploaded, KeptInline, Failed]


@dataclass
class MaterializeResult:
    responses: List[FieldResponse]
    all_uploaded: bool
    outcomes: List[MediaOutcome] = field(default_factory=list)


class MediaStore(ABC):
    """Durable storage for images; returns a public URL."""

    @abstractmethod
    def upload(self, data: str, file_name: str) -> str:
        """Upload an inline payload. Raises MediaUploadError on failure."""
        pass


class HttpMediaStore(MediaStore):
    """Posts {image, fileName} to the configured upload endpoint."""

    def __init__(self, url: str = None, session=None):
        self.url = url if url is not None else MEDIA_UPLOAD_URL
        self.session = session or build_session()

    def upload(self, data: str, file_name: str) -> str:
        if not self.url:
            raise MediaUploadError("media upload not configured")

        response = self.session.post(self.url, json={"image": data, "fileName": file_name}, timeout=REQUEST_TIMEOUT)
        if response.status_code >= 400:
            raise MediaUploadError(f"upload returned HTTP {response.status_code}")

        body = response.json()
        url = body.get("url")
        if not body.get("success", True) or not url:
            raise MediaUploadError(body.get("error") or "upload returned no url")
        return url


class InMemoryMediaStore(MediaStore):
    """Test double; `fail_times` makes the first N uploads raise."""

    def __init__(self, fail_times: int = 0, always_fail: bool = False, base_url: str = "https://media.local"):
        self.fail_times = fail_times
        self.always_fail = always_fail
        self.base_url = base_url
        self.uploads: Dict[str, str] = {}
        self.attempts = 0
        self._lock = threading.Lock()

    def upload(self, data: str, file_name: str) -> str:
        with self._lock:
            self.attempts += 1
            if self.always_fail or self.attempts <= self.fail_times:
                raise MediaUploadError("simulated upload failure")
            url = f"{self.base_url}/{file_name}"
            self.uploads[url] = data
            return url


def is_inline(item: Any) -> bool:
    return isinstance(item, str) and item.startswith("data:")


def is_url(item: Any) -> bool:
    return isinstance(item, str) and item.startswith("http")


class MediaMaterializer:
    """Rewrites responses so photos and signatures reference durable URLs."""

    def __init__(self, media_store: MediaStore, max_attempts: int = None, retry_delay: float = None,
                 workers: int = None, sleep: Callable[[float], None] = time.sleep):
        self.media_store = media_store
        self.max_attempts = max_attempts or MEDIA_UPLOAD_RETRIES
        self.retry_delay = MEDIA_RETRY_DELAY_SEC if retry_delay is None else retry_delay
        self.workers = workers or MEDIA_UPLOAD_WORKERS
        self.sleep = sleep

    def materialize(self, responses: List[FieldResponse], name_prefix: str = "checklist") -> MaterializeResult:
        jobs = []
        for index, response in enumerate(responses):
            photos = extract_photos(response.value_json)
            if photos is not None:
                for position, item in enumerate(photos):
                    jobs.append((index, "photo", position, item))
                continue

            signature = self._signature_of(response)
            if signature is not None:
                jobs.append((index, "signature", 0, signature))

        if not jobs:
            return MaterializeResult(responses=list(responses), all_uploaded=True)

        def run(job):
            index, kind, position, item = job
            file_name = f"{name_prefix}_{responses[index].field_id}_{kind}_{position}.jpg"
            return self._materialize_item(item, file_name)

        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            outcomes = list(pool.map(run, jobs))

        photo_lists: Dict[int, List[Any]] = {}
        signatures: Dict[int, Any] = {}
        uploaded_by_response: Dict[int, bool] = {}
        for (index, kind, position, item), outcome in zip(jobs, outcomes):
            durable = isinstance(outcome, Uploaded)
            uploaded_by_response[index] = uploaded_by_response.get(index, True) and durable
            value = outcome.url if durable else item
            if kind == "photo":
                photo_lists.setdefault(index, []).append(value)
            else:
                signatures[index] = value

        rewritten = []
        for index, response in enumerate(responses):
            if index in photo_lists:
                value_json = {"photos": photo_lists[index], "uploadedToDrive": uploaded_by_response[index]}
                rewritten.append(replace(response, value_json=value_json))
            elif index in signatures:
                value_json = dict(response.value_json) if isinstance(response.value_json, dict) else {}
                value_json["signature"] = signatures[index]
                value_json["uploadedToDrive"] = uploaded_by_response[index]
                rewritten.append(replace(response, value_json=value_json, value_text=None))
            else:
                rewritten.append(response)

        all_uploaded = all(isinstance(o, Uploaded) for o in outcomes)
        return MaterializeResult(responses=rewritten, all_uploaded=all_uploaded, outcomes=outcomes)

    def _materialize_item(self, item: Any, file_name: str) -> MediaOutcome:
        if is_url(item):
            return Uploaded(item)
        if not is_inline(item):
            return KeptInline("unknown media format")

        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                url = self.media_store.upload(item, file_name)
                logger.log_media_upload(file_name, "success", attempt)
                return Uploaded(url)
            except Exception as e:
                last_error = str(e)
                logger.log_media_upload(file_name, "retrying" if attempt < self.max_attempts else "failed",
                                        attempt, last_error)
                if attempt < self.max_attempts:
                    self.sleep(self.retry_delay)

        return Failed(last_error or "upload failed")

    @staticmethod
    def _signature_of(response: FieldResponse) -> Optional[str]:
        if isinstance(response.value_json, dict):
            data = response.value_json.get("signature")
            if isinstance(data, str) and (is_inline(data) or is_url(data)):
                return data
        return None
