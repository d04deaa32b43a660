"""
Binary transport encoding for the remote server and client.

Request and response models travel as MessagePack maps of their JSON-mode
pydantic dump. Decoding validates back into the model, so datetimes come
back timezone-aware in the reference zone and floats stay float32-exact.
"""

from typing import Type, TypeVar

import msgpack
from pydantic import BaseModel, ValidationError

CONTENT_TYPE = "application/x-msgpack"

# Carries the ErrorKind of a failed call alongside its 400 status.
ERROR_KIND_HEADER = "X-Error-Kind"

M = TypeVar("M", bound=BaseModel)


class WireError(Exception):
    """Raised when a transport body can't be encoded or decoded."""


def encode(value: BaseModel) -> bytes:
    """
    Encode a model into its transport body.

    Raises:
        WireError: If the model contains values MessagePack can't carry
    """
    try:
        return msgpack.packb(value.model_dump(mode="json"), use_bin_type=True)
    except (TypeError, ValueError, OverflowError) as e:
        raise WireError(f"encode {type(value).__name__}: {e}") from e


def decode(body: bytes, model: Type[M]) -> M:
    """
    Decode a transport body into an instance of model.

    Raises:
        WireError: If the body is not valid MessagePack or doesn't fit the model
    """
    try:
        data = msgpack.unpackb(body, raw=False)
    except (ValueError, msgpack.UnpackException) as e:
        raise WireError(f"decode {model.__name__}: {e}") from e

    if not isinstance(data, dict):
        raise WireError(f"decode {model.__name__}: expected a map, got {type(data).__name__}")

    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise WireError(f"decode {model.__name__}: {e}") from e
