class ChatError(Exception):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class BadRequest(ChatError):
    status_code = 400


class Forbidden(ChatError):
    status_code = 403


class NotFound(ChatError):
    status_code = 404


class PayloadTooLarge(ChatError):
    status_code = 413
