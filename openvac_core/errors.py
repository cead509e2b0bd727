class OpenvacError(Exception):
    """Base error for OpenVAC."""


class RecoverableError(OpenvacError):
    """Indicates the operation can be retried safely."""


class PermanentError(OpenvacError):
    """Indicates the operation should not be retried."""


class ValidationError(OpenvacError):
    """Input validation failure."""


class UploadTooLarge(ValidationError):
    """Uploaded media exceeded MAX_UPLOAD_BYTES."""


class MediaError(PermanentError):
    """Source media could not be probed or sampled."""


class ConversionFailed(OpenvacError):
    """The rasterizer exited unsuccessfully or could not be launched."""


class PreviewCancelled(OpenvacError):
    """A preview was superseded or its client went away."""
