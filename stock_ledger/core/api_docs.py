from stock_ledger.schemas.common import ErrorOut


_ERROR_EXAMPLES: dict[int, tuple[str, str]] = {
    404: ("not_found", "Item not found"),
    409: ("conflict", "Stock changed since it was read; re-read and retry"),
    422: ("validation_error", "Validation failed"),
    500: ("internal_error", "Internal server error"),
    503: ("persistence_error", "Could not update item; no changes were saved"),
}


def error_responses(*status_codes: int) -> dict[int, dict]:
    responses: dict[int, dict] = {}
    for status_code in status_codes:
        code, message = _ERROR_EXAMPLES.get(status_code, ("http_error", "HTTP error"))
        responses[status_code] = {
            "model": ErrorOut,
            "description": message,
            "content": {
                "application/json": {
                    "example": {
                        "error": {
                            "code": code,
                            "message": message,
                            "request_id": "request-id",
                            "path": "/items",
                            "details": None,
                        }
                    }
                }
            },
        }
    return responses
