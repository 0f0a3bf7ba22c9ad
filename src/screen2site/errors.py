from __future__ import annotations


class FrameExtractionError(RuntimeError):
    """Base class for failures on the video-to-frames side."""


class EngineInitError(FrameExtractionError):
    """A single engine source was fetched but could not be initialized."""


class ResourceUnavailable(FrameExtractionError):
    def __init__(self, attempts: int, last_error: str, hints: str = "") -> None:
        self.attempts = attempts
        self.last_error = last_error
        message = f"Failed to initialize ffmpeg after trying {attempts} different sources."
        if hints:
            message = f"{message}\n\n{hints}"
        message = f"{message}\n\nLast error: {last_error or 'Unknown error'}"
        super().__init__(message)


class DecodeFailure(FrameExtractionError):
    pass


class EmptyExtraction(DecodeFailure):
    """Extraction finished without producing a single frame."""


class ExtractionExhausted(FrameExtractionError):
    def __init__(self, primary_error: BaseException, fallback_error: BaseException) -> None:
        self.primary_error = primary_error
        self.fallback_error = fallback_error
        super().__init__(
            "Failed to extract frames using both methods.\n\n"
            f"ffmpeg error: {primary_error or 'Unknown'}\n"
            f"OpenCV error: {fallback_error or 'Unknown'}\n\n"
            "Please ensure your video file is valid and try again."
        )


class CodeBundleError(ValueError):
    """Base class for failures turning generated text into site files."""


class BundleIncomplete(CodeBundleError):
    pass


class TemplateLeakError(CodeBundleError):
    pass


class ComponentParseError(ValueError):
    """The component-detection reply held no usable JSON array."""
