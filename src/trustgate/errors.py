"""Exception types shared by the credential issuers and the gateway."""


class ConfigurationError(Exception):
    """Raised when a component is used without the configuration it needs."""

    pass


class UpstreamError(Exception):
    """Raised when the authorization or resource server rejects a call.

    Carries enough of the upstream response to diagnose the failure.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        reason: str | None = None,
        body: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason
        self.body = body

    @classmethod
    def from_response(cls, prefix: str, response) -> "UpstreamError":
        """Build an error from a non-2xx httpx response.

        Args:
            prefix: Operation description, e.g. "Token exchange failed".
            response: The httpx response.

        Returns:
            UpstreamError with status, reason phrase and a body excerpt.
        """
        body = (response.text or "")[:500]
        return cls(
            f"{prefix}: {response.status_code} {response.reason_phrase} - {body}",
            status_code=response.status_code,
            reason=response.reason_phrase,
            body=body,
        )
