
import orjson


def dumps(obj) -> str:
    # text frames: browsers receive a Blob for binary ones
    return orjson.dumps(obj).decode("utf-8")


def loads(data):
    """Decode a JSON frame. Raises ValueError (orjson.JSONDecodeError) on bad input."""
    return orjson.loads(data)


def key_text(parts) -> str:
    # compact JSON array; component boundaries survive escaping
    return orjson.dumps(list(parts)).decode("utf-8")
