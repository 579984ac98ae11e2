"""Exceptions shared by the validation workflow, storage and HTTP layers.

The batch format matcher never raises; everything here belongs to the
collaborators around it and is meant to be shown to the user as text.
"""


class BatchCheckError(Exception):
    pass


class ExtractionFailure(BatchCheckError):
    """Image-text extraction returned nothing usable for a required field."""


class LookupFailure(BatchCheckError):
    """No catalog entry exists for an extracted or typed barcode."""


class ImageRejectedError(BatchCheckError):
    """Uploaded image has an unsupported type or exceeds the size limit."""


class PayloadValidationError(BatchCheckError):
    pass


class PermissionDenied(BatchCheckError):
    pass
