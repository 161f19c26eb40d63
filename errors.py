class LedgerError(ValueError):
    pass


class NotFound(LedgerError):
    pass


class Forbidden(LedgerError):
    pass


class BadRequest(LedgerError):
    pass


class InsufficientFunds(BadRequest):
    pass
