"""Container image reference helpers."""

from __future__ import annotations


def parse_image_ref(image_ref: str) -> dict[str, str | None]:
    """Parse a container image reference into components.

    Args:
        image_ref: Image reference (e.g., "registry/image:tag@sha256:digest").

    Returns:
        Dict with keys: registry, repository, tag, digest.
    """
    result: dict[str, str | None] = {
        "registry": None,
        "repository": None,
        "tag": None,
        "digest": None,
    }

    if "@" in image_ref:
        image_ref, digest = image_ref.rsplit("@", 1)
        result["digest"] = digest

    # A colon after the last slash is a tag; before it, a registry port
    last_segment = image_ref.rsplit("/", 1)[-1]
    if ":" in last_segment:
        image_ref, tag = image_ref.rsplit(":", 1)
        result["tag"] = tag

    parts = image_ref.split("/")
    if len(parts) >= 2 and ("." in parts[0] or ":" in parts[0] or parts[0] == "localhost"):
        result["registry"] = parts[0]
        result["repository"] = "/".join(parts[1:])
    else:
        result["repository"] = image_ref

    return result


def image_repository(image_ref: str) -> str:
    """Repository part of ``image_ref`` without tag or digest."""
    return parse_image_ref(image_ref)["repository"] or ""


__all__ = [
    "image_repository",
    "parse_image_ref",
]
