"""PRNU authenticator: enrollment, authentication and tamper detection.

All pixel work and store I/O run on an AnalysisPool; the public coroutines
either return their result or raise exactly one PRNUError subclass.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, TypeVar

from prnuauth.errors import (
    DimensionMismatchError,
    FingerprintNotFoundError,
    InsufficientImagesError,
    PRNUError,
    ProcessingError,
)
from prnuauth.models import AuthenticationResult
from prnuauth.pool import AnalysisPool
from prnuauth.prnu.aggregation import build_fingerprint
from prnuauth.prnu.correlation import local_pce_grid, pce
from prnuauth.prnu.denoising import ResidualExtractor, ResidualSample
from prnuauth.prnu.preprocessing import decode_image, image_size
from prnuauth.prnu.tamper import localize_tampering
from prnuauth.storage.store import build_store

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from prnuauth.config import Settings
    from prnuauth.models import CameraFingerprint, TamperDetectionResult
    from prnuauth.prnu.preprocessing import ImageInput
    from prnuauth.storage.store import FingerprintStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PRNUAuthenticator:
    """Camera enrollment and image authentication against PRNU fingerprints."""

    def __init__(
        self,
        settings: Settings,
        store: FingerprintStore | None = None,
        pool: AnalysisPool | None = None,
    ) -> None:
        self._settings = settings
        self._store = store if store is not None else build_store(settings)
        self._owns_pool = pool is None
        self._pool = pool if pool is not None else AnalysisPool(settings.max_concurrent)
        self._extractor = ResidualExtractor(settings)

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def store(self) -> FingerprintStore:
        return self._store

    @property
    def pool(self) -> AnalysisPool:
        return self._pool

    # -- Public API ---------------------------------------------------------

    async def enroll(self, camera_id: str, images: Sequence[ImageInput]) -> CameraFingerprint:
        """Build, persist and return the fingerprint for ``camera_id``.

        Residuals are extracted one pool task per image. Any prior record for
        the camera is replaced only after aggregation succeeds.

        Raises:
            InsufficientImagesError: Fewer images than the configured minimum;
                nothing is processed or written.
        """
        required = self._settings.enrollment_image_count
        if len(images) < required:
            raise InsufficientImagesError(required=required, provided=len(images))

        logger.info("Enrolling %s from %d images", camera_id, len(images))
        outcomes = await asyncio.gather(
            *(self._run(self._extract, image) for image in images),
            return_exceptions=True,
        )
        samples: list[ResidualSample] = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
            samples.append(outcome)

        fingerprint = await self._run(
            build_fingerprint,
            camera_id,
            samples,
            self._settings.processing_width,
            self._settings.processing_height,
            required,
        )
        await self._run(self._store.save, fingerprint)
        logger.info("Enrolled %s (average PCE %.2f)", camera_id, fingerprint.average_pce)
        return fingerprint

    async def authenticate(self, image: ImageInput, camera_id: str) -> AuthenticationResult:
        """Score one image against the enrolled fingerprint.

        Raises:
            FingerprintNotFoundError: ``camera_id`` is not enrolled.
        """
        fingerprint = await self._require_fingerprint(camera_id)
        result = await self._run(self._authenticate_sync, image, fingerprint)
        logger.info(
            "Authenticated image against %s: PCE %.2f, authentic=%s",
            camera_id,
            result.pce_score,
            result.is_authentic,
        )
        return result

    async def authenticate_batch(
        self, images: Sequence[ImageInput], camera_id: str
    ) -> list[AuthenticationResult]:
        """Authenticate several images, all or nothing.

        One pool task per image; every task is awaited before returning. If
        any image fails, one failure is raised and the successful results are
        discarded. It is the first failure to complete, so when several images
        fail, which of their errors surfaces is not specified. Otherwise
        results follow the input order.
        """
        fingerprint = await self._require_fingerprint(camera_id)
        results: list[AuthenticationResult | None] = [None] * len(images)
        first_error: PRNUError | None = None

        tasks = [self._authenticate_indexed(index, image, fingerprint) for index, image in enumerate(images)]
        for next_done in asyncio.as_completed(tasks):
            try:
                index, result = await next_done
            except PRNUError as exc:
                if first_error is None:
                    first_error = exc
                continue
            results[index] = result

        if first_error is not None:
            logger.info("Batch of %d images for %s failed: %s", len(images), camera_id, first_error)
            raise first_error
        return [result for result in results if result is not None]

    async def detect_tampering(self, image: ImageInput, camera_id: str) -> TamperDetectionResult:
        """Localize blocks whose local PCE is a low outlier.

        Raises:
            FingerprintNotFoundError: ``camera_id`` is not enrolled.
        """
        fingerprint = await self._require_fingerprint(camera_id)
        result = await self._run(self._detect_tampering_sync, image, fingerprint)
        logger.info(
            "Tamper check against %s: %d of %d blocks flagged",
            camera_id,
            len(result.tampered_regions),
            result.total_blocks,
        )
        return result

    async def get_fingerprint(self, camera_id: str) -> CameraFingerprint | None:
        return await self._run(self._store.load, camera_id)

    async def delete_fingerprint(self, camera_id: str) -> None:
        await self._run(self._store.delete, camera_id)

    async def list_enrolled_cameras(self) -> list[str]:
        return await self._run(self._store.list_ids)

    async def is_camera_enrolled(self, camera_id: str) -> bool:
        return await self.get_fingerprint(camera_id) is not None

    def shutdown(self) -> None:
        if self._owns_pool:
            self._pool.shutdown()

    # -- Internal -----------------------------------------------------------

    async def _run(self, func: Callable[..., T], *args: object) -> T:
        name = getattr(func, "__name__", repr(func))
        try:
            return await self._pool.run(func, *args)
        except DimensionMismatchError:
            logger.exception("Dimension invariant violated in %s", name)
            raise
        except PRNUError:
            raise
        except Exception as exc:
            logger.exception("Unexpected failure in %s", name)
            raise ProcessingError(str(exc) or type(exc).__name__) from exc

    async def _require_fingerprint(self, camera_id: str) -> CameraFingerprint:
        fingerprint = await self.get_fingerprint(camera_id)
        if fingerprint is None:
            raise FingerprintNotFoundError(camera_id)
        return fingerprint

    async def _authenticate_indexed(
        self, index: int, image: ImageInput, fingerprint: CameraFingerprint
    ) -> tuple[int, AuthenticationResult]:
        return index, await self._run(self._authenticate_sync, image, fingerprint)

    def _open(self, image: ImageInput) -> ImageInput:
        if isinstance(image, (bytes, bytearray)):
            return decode_image(image, self._settings.max_image_pixels)
        return image

    def _extract(self, image: ImageInput) -> ResidualSample:
        return self._extractor.extract(self._open(image))

    def _authenticate_sync(self, image: ImageInput, fingerprint: CameraFingerprint) -> AuthenticationResult:
        opened = self._open(image)
        residual = self._extractor.extract_residual(opened)
        score = pce(residual, fingerprint.fingerprint)
        return self._decide(score, fingerprint.camera_id, image_size(opened))

    def _detect_tampering_sync(self, image: ImageInput, fingerprint: CameraFingerprint) -> TamperDetectionResult:
        block_size = self._settings.tamper_block_size
        residual = self._extractor.extract_residual(self._open(image))
        scores = local_pce_grid(residual, fingerprint.fingerprint, fingerprint.width, fingerprint.height, block_size)
        return localize_tampering(scores, fingerprint.width, block_size)

    def _decide(self, score: float, camera_id: str, source_size: tuple[int, int]) -> AuthenticationResult:
        threshold = self._settings.pce_threshold
        return AuthenticationResult(
            is_authentic=score >= threshold,
            pce_score=score,
            confidence=max(0.0, min(100.0, score / threshold * 100.0)),
            camera_id=camera_id,
            metadata={
                "threshold": threshold,
                "image_size": list(source_size),
                "processing_size": [self._settings.processing_width, self._settings.processing_height],
                "denoiser": self._settings.denoiser,
            },
        )
