"""Exception taxonomy for the escrow engine.

Everything the engine raises derives from EscrowError so the HTTP layer can
map faults to responses in one place. Verification misses are not errors;
they are recorded as unverified results.
"""


class EscrowError(Exception):
    """Base class for caller-facing escrow faults."""


class ValidationError(EscrowError):
    """Bad input or an operation not allowed in the escrow's current state."""


class AuthorizationError(EscrowError):
    """Caller is not the party allowed to perform this operation."""


class NotFoundError(EscrowError):
    """Referenced escrow or user does not exist."""


class UpstreamError(EscrowError):
    """An external service (prover, Bitcoin node, relay) failed.

    No escrow state has been mutated when this is raised; the call is safe
    to retry.
    """


class ProverError(UpstreamError):
    def __init__(self, message: str, status_code: int | None = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class BitcoinRPCError(UpstreamError):
    pass


class BroadcastError(UpstreamError):
    pass
