"""Error taxonomy for the upload relay.

Every error carries the HTTP status it maps to and a message that is safe to
show to the client. Anything more detailed belongs in the server log.
"""


class UploadError(Exception):
    status_code = 500
    message = "Upload failed on server"

    def __init__(self, message: str | None = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


class NoFilePart(UploadError):
    status_code = 400
    message = 'No file received. Form field must be named "file".'


class UnsupportedMediaType(UploadError):
    status_code = 400

    def __init__(self, content_type: str | None):
        self.content_type = content_type
        shown = content_type or "unknown"
        super().__init__(f'Unsupported file type "{shown}". Only images and PDFs are allowed.')


class PayloadTooLarge(UploadError):
    status_code = 413

    def __init__(self, max_size_bytes: int):
        self.max_size_bytes = max_size_bytes
        super().__init__(f"File exceeds the maximum upload size of {max_size_bytes} bytes.")


class MissingUploader(UploadError):
    status_code = 401

    def __init__(self, header: str):
        super().__init__(f"Uploader identity required in the {header} header.")


class OriginNotAllowed(UploadError):
    status_code = 403
    message = "Origin not allowed"


class StorageConflict(UploadError):
    status_code = 409
    message = "Could not allocate a unique storage name, please retry."

    def __init__(self, storage_name: str):
        self.storage_name = storage_name
        super().__init__()


class StorageIOError(UploadError):
    status_code = 500


class LedgerIOError(UploadError):
    """The file was written but its metadata record was not.

    ``storage_name`` names the orphaned file left in the content directory.
    """

    status_code = 500

    def __init__(self, storage_name: str):
        self.storage_name = storage_name
        super().__init__()
