from upload_relay.errors import PayloadTooLarge, UnsupportedMediaType
from upload_relay.models import UploadRequest


def normalize_content_type(content_type: str | None) -> str:
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


class UploadPolicy:
    """Checks run on an upload before any of its bytes are stored.

    ``allowed_content_types`` holds exact types (``application/pdf``) or whole
    families (``image/*``).
    """

    def __init__(self, allowed_content_types: list[str], max_size_bytes: int):
        self.allowed_content_types = [normalize_content_type(ct) for ct in allowed_content_types]
        self.max_size_bytes = max_size_bytes

    def content_type_allowed(self, content_type: str | None) -> bool:
        normalized = normalize_content_type(content_type)
        if "/" not in normalized:
            return False
        major, _, minor = normalized.partition("/")
        if not major or not minor:
            return False
        for allowed in self.allowed_content_types:
            if allowed == normalized or allowed == f"{major}/*":
                return True
        return False

    def check(self, request: UploadRequest) -> None:
        if not self.content_type_allowed(request.content_type):
            raise UnsupportedMediaType(request.content_type)
        if request.size is not None and request.size > self.max_size_bytes:
            raise PayloadTooLarge(self.max_size_bytes)
