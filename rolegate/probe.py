"""TCP reachability probe for proxy hops and VPN endpoints.

Diagnostic only: provisioning never depends on a probe result.
"""

from __future__ import annotations

import logging
import socket

from rolegate.config import settings
from rolegate.schemas import ProbeResult, ProxyChain

logger = logging.getLogger(__name__)


def check_tcp(host: str, port: int, timeout: float | None = None) -> ProbeResult:
    """Attempt a TCP connection to host:port."""
    timeout = timeout if timeout is not None else settings.probe_timeout
    try:
        with socket.create_connection((host, port), timeout=timeout):
            pass
    except OSError as e:
        logger.debug(f"Probe {host}:{port} failed: {e}")
        return ProbeResult(host=host, port=port, reachable=False, error=str(e) or type(e).__name__)
    return ProbeResult(host=host, port=port, reachable=True)


def probe_chain(chain: ProxyChain, timeout: float | None = None) -> list[ProbeResult]:
    """Probe every hop of a chain from the host.

    Only the first hop is necessarily reachable from here; later hops may
    only be reachable through the chain itself.
    """
    return [check_tcp(hop.host, hop.port, timeout) for hop in chain.hops]
