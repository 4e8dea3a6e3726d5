"""Content fingerprinting used for change detection."""
import hashlib


def fingerprint(text: str) -> str:
    """Compute the SHA-256 hex digest of ``text`` encoded as UTF-8.

    This is the only signal used to decide whether a tracked file changed;
    modification times and sizes are not trusted.
    """
    return hashlib.sha256(text.encode('utf-8')).hexdigest()
