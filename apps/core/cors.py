from fastapi.middleware.cors import CORSMiddleware
from starlette.datastructures import Headers
from starlette.responses import Response

from config import Settings

ALLOWED_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
ALLOWED_HEADERS = ["Content-Type", "Authorization", "X-Request-ID", "stripe-signature"]
MAX_AGE_SECONDS = 86400


class PreflightCORSMiddleware(CORSMiddleware):
    """CORSMiddleware that answers allowed pre-flight requests with 204 No Content."""

    def preflight_response(self, request_headers: Headers) -> Response:
        response = super().preflight_response(request_headers)
        if response.status_code != 200:
            return response
        headers = {
            key: value
            for key, value in response.headers.items()
            if key not in ("content-length", "content-type")
        }
        return Response(status_code=204, headers=headers)


def cors_options(settings: Settings) -> dict:
    return {
        "allow_origins": [origin for origin in settings.allowed_origins if "*" not in origin],
        "allow_origin_regex": settings.allowed_origin_regex,
        "allow_methods": ALLOWED_METHODS,
        "allow_headers": ALLOWED_HEADERS,
        "max_age": MAX_AGE_SECONDS,
    }
