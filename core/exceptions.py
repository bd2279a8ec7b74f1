class AppException(Exception):
    """Error surfaced to API callers as ``{"success": false, "error": {...}}``."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: dict | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details or {}

    @property
    def is_server_error(self) -> bool:
        return self.status_code >= 500

    def to_response(self) -> dict:
        return {
            "success": False,
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            },
        }
