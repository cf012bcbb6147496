# storage.py
import base64
import binascii
import logging
import os
import re
import secrets

from werkzeug.utils import secure_filename

from errors import StorageError, ValidationError

logger = logging.getLogger(__name__)

DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<params>(;[\w-]+=[^;,]+)*)(?P<b64>;base64)?,(?P<data>.*)$", re.S)

EXT_BY_MIME = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "application/pdf": ".pdf",
}
ALLOWED_UPLOAD_EXTS = set(EXT_BY_MIME.values())


def is_data_uri(value) -> bool:
    return isinstance(value, str) and value.startswith("data:") and "," in value[:200]


def decode_data_uri(value: str):
    m = DATA_URI_RE.match(value or "")
    if not m or not m.group("b64"):
        raise ValidationError("Malformed base64 data URI")
    mime = (m.group("mime") or "application/octet-stream").lower()
    try:
        raw = base64.b64decode(m.group("data"), validate=False)
    except (binascii.Error, ValueError):
        raise ValidationError("Malformed base64 data URI")
    return raw, mime


def to_data_uri(raw: bytes, mime: str) -> str:
    return f"data:{mime};base64,{base64.b64encode(raw).decode('ascii')}"


class NullStorage:
    """Keeps every upload inline as a data URL."""

    available = False

    def upload(self, raw: bytes, mime: str, folder: str, filename: str = None) -> str:
        return to_data_uri(raw, mime)


class LocalDiskStorage:
    available = True

    def __init__(self, upload_dir: str, public_base_url: str = "", url_prefix: str = "/static/uploads"):
        self.upload_dir = upload_dir
        self.public_base_url = public_base_url or ""
        self.url_prefix = url_prefix

    def upload(self, raw: bytes, mime: str, folder: str, filename: str = None) -> str:
        ext = EXT_BY_MIME.get(mime)
        if not ext and filename:
            ext = os.path.splitext(secure_filename(filename))[1].lower()
        if ext not in ALLOWED_UPLOAD_EXTS:
            raise ValidationError(f"Unsupported file type: {mime}")

        folder = secure_filename(folder) or "misc"
        target_dir = os.path.join(self.upload_dir, folder)
        fname = f"{secrets.token_hex(12)}{ext}"
        try:
            os.makedirs(target_dir, exist_ok=True)
            with open(os.path.join(target_dir, fname), "wb") as fh:
                fh.write(raw)
        except OSError as e:
            logger.error("Upload to %s failed: %s", target_dir, e)
            raise StorageError("File storage is unavailable")
        return f"{self.public_base_url}{self.url_prefix}/{folder}/{fname}"


def build_storage(config: dict):
    if config.get("STORAGE_BACKEND") == "null":
        return NullStorage()
    return LocalDiskStorage(config["UPLOAD_DIR"], config.get("PUBLIC_BASE_URL", ""))


def store_documents(storage, documents: dict, folder: str) -> dict:
    """Replace every data URI in `documents` with a stored URL.

    Values may be strings or lists of strings (id proofs). All uploads are
    resolved before anything is returned, so a failed upload leaves no
    partially converted mapping behind.
    """
    out = {}
    for key, value in (documents or {}).items():
        if isinstance(value, list):
            out[key] = [_store_one(storage, v, folder, key) for v in value]
        else:
            out[key] = _store_one(storage, value, folder, key)
    return out


def _store_one(storage, value, folder, key):
    if not is_data_uri(value):
        return value
    raw, mime = decode_data_uri(value)
    return storage.upload(raw, mime, folder, filename=key)
