from typing import Optional


class ItchClaimError(Exception):
    pass


class TransientNetworkError(ItchClaimError):
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class RateLimited(ItchClaimError):
    pass


class ParseError(ItchClaimError):
    pass


class DataInconsistency(ParseError):
    pass


class AuthenticationError(ItchClaimError):
    pass
