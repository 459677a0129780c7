import pickle
from typing import Any

# Payload columns hold pickled domain objects; queryable fields get their own columns.


def encode_payload(value: Any) -> bytes:
    return pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)


def decode_payload(value: bytes) -> Any:
    return pickle.loads(bytes(value))
