"""
Reading and writing the image descriptor artifact.

The file holds a JSON array with exactly one ``{"name", "imageUri"}`` object.
"""

import json
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from delivery_pipeline.exceptions import FileOperationError, ValidationError
from delivery_pipeline.schemas.artifacts import ImageDescriptor


def write_image_definitions(descriptor: ImageDescriptor, path: Path) -> Path:
    """Write the descriptor file, creating parent directories."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(descriptor.to_image_definitions()), encoding="utf-8")
    except OSError as e:
        raise FileOperationError(
            f"Unable to write image definitions: {e}",
            file_path=str(path),
            operation="write",
        ) from e
    return path


def read_image_definitions(path: Path) -> ImageDescriptor:
    """
    Read and validate the descriptor file.

    Raises:
        FileOperationError: If the file cannot be read
        ValidationError: If the content is not a single valid descriptor
    """
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as e:
        raise FileOperationError(
            f"Unable to read image definitions: {e}",
            file_path=str(path),
            operation="read",
        ) from e
    except json.JSONDecodeError as e:
        raise ValidationError(f"Image definitions are not valid JSON: {e}") from e

    if not isinstance(raw, list) or len(raw) != 1:
        raise ValidationError(
            "Image definitions must be a list with exactly one entry",
            details={'entries': len(raw) if isinstance(raw, list) else None}
        )

    try:
        return ImageDescriptor.model_validate(raw[0])
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid image definition: {e}") from e
