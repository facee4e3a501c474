"""
Input validation utilities for the delivery pipeline.

This module provides reusable validation functions for API endpoints
and service layers: webhook URLs, repository URLs, branch names, commit
hashes, image tags and image URIs.
"""

import re
from urllib.parse import urlparse

from delivery_pipeline.exceptions import ValidationError

IMAGE_TAG_PATTERN = re.compile(r'^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$')
IMAGE_URI_PATTERN = re.compile(
    r'^[a-z0-9]+(?:[._-][a-z0-9]+)*(?:/[a-z0-9]+(?:[._-][a-z0-9]+)*)*:[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$'
)
COMMIT_HASH_PATTERN = re.compile(r'^[0-9a-fA-F]{4,64}$')
CONTAINER_NAME_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_-]{0,254}$')


def validate_url_format(url: str) -> bool:
    """
    Validate that a URL has a proper format.

    Args:
        url: URL string to validate

    Returns:
        True if URL has a scheme and a host, False otherwise

    Raises:
        ValidationError: If URL is not a non-empty string
    """
    if not url or not isinstance(url, str):
        raise ValidationError("URL must be a non-empty string")

    parsed = urlparse(url)
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


def validate_git_repository_url(url: str) -> bool:
    """
    Validate Git repository URL format (HTTPS or SSH).

    Args:
        url: Git repository URL to validate

    Returns:
        True if URL format is valid, False otherwise

    Raises:
        ValidationError: If URL is not a non-empty string
    """
    if not url or not isinstance(url, str):
        raise ValidationError("Repository URL must be a non-empty string")

    url = url.strip()

    patterns = [
        r'^git@[\w\.-]+:[\w\.\-\/]+\.git$',
        r'^ssh://git@[\w\.-]+[\w\.\-\/]*\.git$',
        r'^https://[\w\.\-]+(:\d+)?/[\w\.\-\/]+$',
        r'^codecommit::[\w-]+://[\w\.\-@]+$',
    ]

    return any(re.match(pattern, url) for pattern in patterns)


def validate_branch_name(branch: str) -> bool:
    """
    Validate Git branch name format.

    Raises:
        ValidationError: If branch name is empty or not a string
    """
    if not isinstance(branch, str):
        raise ValidationError("Branch name must be a string")

    branch = branch.strip()

    if not branch:
        raise ValidationError("Branch name cannot be empty")

    # Git branch name rules
    invalid_patterns = [
        r'\.\.',  # No double dots
        r'^\.',   # Cannot start with dot
        r'\.$',   # Cannot end with dot
        r'@{',    # No reflog specifiers
        r'\s',    # No whitespace
        r'//',    # No consecutive slashes
    ]

    if branch.startswith('-'):
        return False

    return not any(re.search(pattern, branch) for pattern in invalid_patterns)


def validate_commit_hash(commit_hash: str) -> bool:
    """
    Validate a full or abbreviated commit hash.

    An empty string is accepted: a trigger may carry no resolved version,
    in which case the image tag falls back to ``latest``.
    """
    if not isinstance(commit_hash, str):
        raise ValidationError("Commit hash must be a string")

    if commit_hash == "":
        return True

    return bool(COMMIT_HASH_PATTERN.match(commit_hash))


def validate_image_tag(tag: str) -> bool:
    """Validate an image tag (never empty, at most 128 characters)."""
    if not isinstance(tag, str):
        raise ValidationError("Image tag must be a string")

    return bool(IMAGE_TAG_PATTERN.match(tag))


def validate_image_uri(image_uri: str) -> bool:
    """
    Validate an image URI of the form ``registry/repository:tag``.

    Args:
        image_uri: Image URI to validate

    Returns:
        True if the URI names a repository and a non-empty tag

    Raises:
        ValidationError: If image URI is empty or not a string
    """
    if not isinstance(image_uri, str):
        raise ValidationError("Image URI must be a string")

    image_uri = image_uri.strip()

    if not image_uri:
        raise ValidationError("Image URI cannot be empty")

    return bool(IMAGE_URI_PATTERN.match(image_uri))


def validate_container_name(name: str) -> bool:
    """Validate a container name as accepted in task definitions."""
    if not isinstance(name, str):
        raise ValidationError("Container name must be a string")

    return bool(CONTAINER_NAME_PATTERN.match(name))


def validate_pagination_params(skip: int = 0, limit: int = 100) -> tuple[int, int]:
    """
    Validate pagination parameters.

    Args:
        skip: Number of records to skip
        limit: Maximum number of records to return

    Returns:
        Tuple of validated (skip, limit)

    Raises:
        ValidationError: If parameters are out of range
    """
    if skip < 0:
        raise ValidationError("Skip must be a non-negative integer")

    if limit <= 0:
        raise ValidationError("Limit must be a positive integer")

    if limit > 1000:
        raise ValidationError("Limit cannot exceed 1000")

    return skip, limit
