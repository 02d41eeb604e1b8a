from typing import Any

from rest_framework import status
from rest_framework.response import Response


def success_response(data: Any = None, message: str | None = None, status_code: int = status.HTTP_200_OK, **extra) -> Response:
    payload: dict[str, Any] = {"success": True}
    if data is not None:
        payload["data"] = data
    if message:
        payload["message"] = message
    payload.update(extra)
    return Response(payload, status=status_code)


class EnvelopeResponseMixin:
    """Wrap plain serializer payloads of successful responses as ``{"success": true, "data": ...}``."""

    def finalize_response(self, request, response, *args, **kwargs):
        response = super().finalize_response(request, response, *args, **kwargs)
        if (
            isinstance(response, Response)
            and response.status_code < 400
            and response.status_code != status.HTTP_204_NO_CONTENT
            and not (isinstance(response.data, dict) and "success" in response.data)
        ):
            response.data = {"success": True, "data": response.data}
        return response
