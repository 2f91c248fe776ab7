import re


class AdgateError(Exception):
    """Base class for adgate errors."""
    pass


class ConfigurationMissing(AdgateError):
    """A local list file was not found; defaults are synthesized instead."""
    pass


class RemoteFetchFailure(AdgateError):
    """Downloading or parsing the remote filter list failed."""
    pass


class ClassificationError(AdgateError):
    """A target URL could not be parsed for classification."""
    pass


class UpstreamForwardFailure(AdgateError):
    """The origin could not be reached or did not answer in time."""
    pass


class ValidationError(AdgateError):
    """A request is missing a required field or carries an invalid value."""
    pass


def clean_text(text: str, max_len: int = 200) -> str:
    """Collapse whitespace and control characters into a single-line message."""
    s = (text or "").replace("\r", " ").replace("\n", " ").strip()
    s = "".join(ch if (ch >= " " and ch != "\x7f") else " " for ch in s)
    s = re.sub(r"\s+", " ", s).strip()
    if max_len and len(s) > max_len:
        s = s[: max_len - 3].rstrip() + "..."
    return s


def public_error_message(
    e: Exception,
    expose: bool = False,
    default: str = "Something went wrong",
) -> str:
    """Return a client-safe message for an unhandled fault.

    Internal details are only included when ``expose`` is set (development
    mode). ValidationError messages are always user-facing.
    """
    if expose:
        return clean_text(f"{type(e).__name__}: {e}") or default
    if isinstance(e, ValidationError):
        return clean_text(str(e)) or default
    return default
