"""
Pulse Migrator Connection Verification

Authenticated pre-flight probe of a project endpoint.
"""

from typing import Callable, Optional

import requests

from pulse_migrator.exceptions import ConnectionFailedError
from pulse_migrator.logging_config import get_logger
from pulse_migrator.models import ConnectionFailure


DEFAULT_TIMEOUT = 10.0
USER_AGENT = "PulseMigrator/1.0"

logger = get_logger("verifier")

Probe = Callable[[str, str, float], str]


def probe_endpoint(url: str, credential: str, timeout: float = DEFAULT_TIMEOUT) -> str:
    """Probe a project with its service role key.

    Lists storage buckets: it needs storage admin rights, which makes it a
    good proxy for a valid service role key.

    Args:
        url: Project base URL
        credential: Service role key
        timeout: Request timeout in seconds

    Returns:
        Confirmation message

    Raises:
        ConnectionFailedError: tagged UNAUTHORIZED, UNREACHABLE or TIMEOUT
    """
    api_url = f"{url.rstrip('/')}/storage/v1/bucket"

    try:
        response = requests.get(
            api_url,
            headers={
                "Authorization": f"Bearer {credential}",
                "apikey": credential,
                "User-Agent": USER_AGENT,
            },
            timeout=timeout,
        )
    except requests.Timeout:
        raise ConnectionFailedError(
            f"Connection timed out after {timeout:g}s",
            reason=ConnectionFailure.TIMEOUT,
            endpoint=url,
        )
    except requests.RequestException as e:
        raise ConnectionFailedError(
            f"Cannot connect to {url}",
            reason=ConnectionFailure.UNREACHABLE,
            endpoint=url,
            details=str(e),
        )

    if response.status_code == 200:
        return "Key validated: storage admin access confirmed"
    elif response.status_code in (401, 403):
        raise ConnectionFailedError(
            f"Validation failed (status {response.status_code})",
            reason=ConnectionFailure.UNAUTHORIZED,
            endpoint=url,
            details=response.text[:200],
        )
    else:
        raise ConnectionFailedError(
            f"Project returned status {response.status_code}",
            reason=ConnectionFailure.UNREACHABLE,
            endpoint=url,
            details=response.text[:200],
        )


class ConnectionVerifier:
    """Runs one bounded probe; never retries and never mutates state."""

    def __init__(self, probe: Optional[Probe] = None, timeout: float = DEFAULT_TIMEOUT):
        self.probe = probe or probe_endpoint
        self.timeout = timeout

    def verify(self, endpoint: str, credential: str, timeout: Optional[float] = None) -> str:
        """Verify reachability and authorization of endpoint.

        Returns:
            Probe confirmation message

        Raises:
            ConnectionFailedError: on any failure
        """
        if not endpoint:
            raise ConnectionFailedError("No endpoint URL given", reason=ConnectionFailure.UNREACHABLE)
        if not credential:
            raise ConnectionFailedError(
                "No credential given", reason=ConnectionFailure.UNAUTHORIZED, endpoint=endpoint
            )

        timeout = timeout if timeout is not None else self.timeout
        logger.debug("Probing %s (timeout %ss)", endpoint, timeout)
        try:
            return self.probe(endpoint, credential, timeout)
        except ConnectionFailedError:
            raise
        except Exception as e:
            raise ConnectionFailedError(
                f"Probe of {endpoint} failed",
                reason=ConnectionFailure.UNREACHABLE,
                endpoint=endpoint,
                details=str(e),
            ) from e
