from typing import Any

_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Credentials": True,
}


def read(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    return {
        "body": "I read something",
        "statusCode": 200,
        "headers": dict(_CORS_HEADERS),
    }


def write(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    return {
        "body": "I got something to write: " + str(event.get("body") or ""),
        "statusCode": 200,
        "headers": dict(_CORS_HEADERS),
    }


HANDLERS = {
    "read": read,
    "write": write,
}
