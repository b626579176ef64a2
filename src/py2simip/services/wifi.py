"""
Wi-Fi association collaborator.

The engine never touches Wi-Fi internals. It calls a ``WifiAssociator``
and only cares whether a network whose SSID contains the configured pattern
(case-insensitive) was joined.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Sequence, Union

from py2simip.core.retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WifiHandle:
    """The network that was joined."""

    ssid: str
    signal_dbm: Optional[int] = None


class WifiAssociator(Protocol):
    """Joins the instrument's access point."""

    def connect(
        self,
        ssid_pattern: str,
        max_retries: int,
        retry_delay: float,
        on_found: Optional[Callable[[str], None]] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> Optional[WifiHandle]:
        """
        Find and join a network whose SSID contains ``ssid_pattern``.

        Args:
            ssid_pattern: Case-insensitive SSID substring
            max_retries: Scan/join attempts before giving up
            retry_delay: Seconds between attempts
            on_found: Called with the SSID once a matching network is seen,
                before joining it
            cancel_event: Set to abandon the attempt

        Returns:
            Handle of the joined network, or None on failure
        """
        ...


def ssid_matches(ssid: Optional[str], pattern: str) -> bool:
    """Case-insensitive substring match; quoted SSIDs are unquoted first."""
    if not ssid:
        return False
    return pattern.lower() in ssid.strip('"').lower()


class _NetworkNotFound(LookupError):
    pass


class PresetNetworkAssociator:
    """
    Associator for hosts that are already on the instrument network.

    Desktop and CI hosts cannot be re-associated by this process, so
    "joining" means checking that a visible network matches the pattern.

    Example:
        >>> associator = PresetNetworkAssociator(["Office", "SIMIP-KIA-07"])
        >>> associator.connect("kia", max_retries=3, retry_delay=0.1)
        WifiHandle(ssid='SIMIP-KIA-07', signal_dbm=None)
    """

    def __init__(self, networks: Union[Sequence[str], Callable[[], Sequence[str]]]):
        """
        Args:
            networks: Visible SSIDs, or a callable returning them on each scan
        """
        self._networks = networks

    def _scan(self) -> Sequence[str]:
        if callable(self._networks):
            return self._networks()
        return self._networks

    def connect(
        self,
        ssid_pattern: str,
        max_retries: int,
        retry_delay: float,
        on_found: Optional[Callable[[str], None]] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> Optional[WifiHandle]:
        def attempt(number: int) -> WifiHandle:
            logger.debug(f"Wi-Fi scan attempt {number}/{max_retries}")
            for ssid in self._scan():
                if ssid_matches(ssid, ssid_pattern):
                    logger.info(f"Target network found: {ssid}")
                    if on_found is not None:
                        on_found(ssid)
                    return WifiHandle(ssid=ssid.strip('"'))
            raise _NetworkNotFound(f"no network matching '{ssid_pattern}'")

        policy = RetryPolicy(max_attempts=max_retries, delay=retry_delay,
                             retry_on=(_NetworkNotFound,))
        try:
            return policy.run(attempt, cancel_event, description="Wi-Fi association")
        except _NetworkNotFound:
            logger.warning(f"Target network with pattern '{ssid_pattern}' not found")
            return None
