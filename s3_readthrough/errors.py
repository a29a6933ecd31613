from __future__ import annotations

from enum import Enum
from xml.etree import ElementTree

from litestar.response import Response

XML_MEDIA_TYPE = "application/xml"


class ErrorKind(Enum):
    """Closed set of client-visible failures: ``(status, code, message)``."""

    INVALID_KEY = (400, "InvalidKey", "Invalid object key")
    INCOMPLETE_BODY = (
        400,
        "IncompleteBody",
        "The request body was shorter than announced or the client disconnected",
    )
    ENTITY_TOO_LARGE = (
        400,
        "EntityTooLarge",
        "The object exceeds the maximum allowed size",
    )
    MISSING_CREDENTIALS = (401, "AccessDenied", "Authentication required")
    ACCESS_DENIED = (403, "AccessDenied", "Access denied")
    NO_SUCH_KEY = (404, "NoSuchKey", "Object not found")
    METHOD_NOT_ALLOWED = (405, "MethodNotAllowed", "Method not supported")
    INTERNAL_ERROR = (500, "InternalError", "Internal Server Error")
    NOT_IMPLEMENTED = (501, "NotImplemented", "Bucket listing not implemented")

    def __init__(self, status: int, code: str, message: str):
        self.status = status
        self.code = code
        self.default_message = message


class ProxyError(Exception):
    """A failure that maps onto one :class:`ErrorKind`."""

    def __init__(self, kind: ErrorKind, message: str | None = None):
        self.kind = kind
        self.message = message or kind.default_message
        super().__init__(self.message)

    @property
    def status(self) -> int:
        return self.kind.status

    @property
    def code(self) -> str:
        return self.kind.code


def render_error_xml(error: ProxyError, request_id: str) -> str:
    root = ElementTree.Element("Error")
    ElementTree.SubElement(root, "Code").text = error.code
    ElementTree.SubElement(root, "Message").text = error.message
    ElementTree.SubElement(root, "RequestId").text = request_id
    body = ElementTree.tostring(root, encoding="unicode")
    return f'<?xml version="1.0" encoding="UTF-8"?>\n{body}'


def error_response(error: ProxyError, request_id: str) -> Response:
    return Response(
        content=render_error_xml(error, request_id).encode("utf-8"),
        status_code=error.status,
        media_type=XML_MEDIA_TYPE,
        headers={"x-amz-request-id": request_id},
    )
