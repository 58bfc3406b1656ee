"""Error taxonomy shared by the PRNU pipeline, the store and the API."""

from __future__ import annotations


class PRNUError(Exception):
    """Base class for every failure the authenticator reports."""


class InsufficientImagesError(PRNUError):
    """Enrollment was given fewer images than the configured minimum."""

    def __init__(self, required: int, provided: int) -> None:
        super().__init__(f"Insufficient images. Required: {required}, Provided: {provided}")
        self.required = required
        self.provided = provided


class ImageProcessingError(PRNUError):
    """An input image could not be decoded, resized or converted."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Image processing failed: {reason}")
        self.reason = reason


class FingerprintNotFoundError(PRNUError):
    """No fingerprint is enrolled for the requested camera."""

    def __init__(self, camera_id: str) -> None:
        super().__init__(f"Fingerprint not found: {camera_id}")
        self.camera_id = camera_id


class DimensionMismatchError(PRNUError):
    """Two buffers that must share a length do not.

    Only reachable when stored fingerprints and the processing configuration
    disagree; callers log it as a defect.
    """

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Dimension mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class StorageError(PRNUError):
    """The fingerprint store failed for a reason other than a missing key."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Storage error: {reason}")
        self.reason = reason


class ProcessingError(PRNUError):
    """Unexpected lower-level fault while processing a request."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Processing error: {reason}")
        self.reason = reason
