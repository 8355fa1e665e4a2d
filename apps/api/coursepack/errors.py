from __future__ import annotations


class MediaPipelineError(Exception):
    """Base class for every error raised by the media pipeline."""


class MediaNotFound(MediaPipelineError):
    def __init__(self, media_id: str) -> None:
        super().__init__(f"Media not found: {media_id}")
        self.media_id = media_id


class MediaTimeout(MediaPipelineError):
    pass


class FetchFailure(MediaPipelineError):
    def __init__(self, url: str, detail: str) -> None:
        super().__init__(f"Failed to fetch {url}: {detail}")
        self.url = url
        self.detail = detail


class OperationCancelled(MediaPipelineError):
    pass


class ConversionFailure(MediaPipelineError):
    """The course content could not be converted for packaging. Aborts the run."""


class PackageGenerationError(MediaPipelineError):
    """The assembler failed to produce a package. Aborts the run."""
