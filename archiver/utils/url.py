from yarl import URL


class InvalidUrl(ValueError):
    """Raised when a URL is empty or not an absolute URL with a host."""


def extract_origin(url: str) -> str:
    """Return the routing origin of `url`: `scheme://host`, lower-cased.

    Port, userinfo, path, query and fragment are dropped, so
    `https://User@SiteA.com:8443/x?y=1` maps to `https://sitea.com`.

    Raises:
        InvalidUrl: if `url` is empty, relative, or has no host.
    """
    if not isinstance(url, str) or not url.strip():
        raise InvalidUrl("URL cannot be empty")
    try:
        u = URL(url.strip())
    except (TypeError, ValueError) as exc:
        raise InvalidUrl(f"Invalid URL format: {url!r}") from exc
    if not u.scheme or not u.host:
        raise InvalidUrl(f"Invalid URL format: {url!r}")
    return f"{u.scheme.lower()}://{u.host.lower()}"


def normalize_origin(origin: str) -> str:
    """Canonicalize an origin declaration (`https://SiteA.com/` -> `https://sitea.com`)."""
    return extract_origin(origin)


def file_name_from_url(url: str, default: str = "download") -> str:
    """Return the last path segment of `url`, or `default` when the path is empty."""
    try:
        name = URL(url).name
    except (TypeError, ValueError):
        return default
    return name or default
