"""
NtlmAuthProvider — NTLM messages for proxy authentication via ``ntlm_auth``.

The tunnel agent only moves opaque NTLM messages between the proxy and a
credential provider; this module is the provider that actually knows how
to build them.  It wraps ``ntlm_auth.ntlm.NtlmContext`` so that:

* ``initial_message()`` starts a fresh context and returns the
  NEGOTIATE (type 1) message, and
* ``response_message(challenge)`` feeds the proxy's CHALLENGE (type 2)
  message into that context and returns the AUTHENTICATE (type 3) message.

Thread safety
~~~~~~~~~~~~~
An instance tracks a single handshake at a time.  Agents that open
tunnels concurrently should hand each attempt its own provider through
``HttpsProxyAgent.connect(..., credential_provider=...)``.

Usage::

    from ntlm_bridge.provider import NtlmAuthProvider

    provider = NtlmAuthProvider.from_credentials("CORP\\\\alice:secret")
    agent = HttpsProxyAgent("http://proxy.corp:8080", provider)
"""

from __future__ import annotations

import logging
import socket
from typing import Optional

from ntlm_auth import ntlm

logger = logging.getLogger(__name__)


class NtlmAuthProvider:
    """Credential provider backed by an ``ntlm_auth`` context.

    Parameters
    ----------
    username:
        Account name, without the domain part.
    password:
        Account password.
    domain:
        NetBIOS domain; upper-cased before use.  ``None`` if n/a.
    workstation:
        Name announced to the proxy.  Defaults to this host's name.
    ntlm_compatibility:
        LAN Manager compatibility level (0-5).  Levels 3-5 send NTLMv2
        only, which is what modern proxies expect.
    """

    __slots__ = (
        "username",
        "password",
        "domain",
        "workstation",
        "ntlm_compatibility",
        "_context",
    )

    def __init__(
        self,
        username: str,
        password: str,
        domain: Optional[str] = None,
        workstation: Optional[str] = None,
        ntlm_compatibility: int = 3,
    ):
        self.username = username
        self.password = password
        self.domain = domain.upper() if domain else None
        self.workstation = (workstation or socket.gethostname()).upper()
        self.ntlm_compatibility = ntlm_compatibility
        self._context: Optional[ntlm.NtlmContext] = None

    @classmethod
    def from_credentials(
        cls, credentials: str, domain: Optional[str] = None, **kwargs
    ) -> NtlmAuthProvider:
        """Parse ``user:password`` or ``DOMAIN\\user:password``.

        An explicit *domain* wins over one embedded in *credentials*.
        """
        user, sep, password = credentials.partition(":")
        if not sep:
            raise ValueError("NTLM credentials must look like user:password")
        if "\\" in user:
            embedded, user = user.split("\\", 1)
            domain = domain or embedded
        return cls(user, password, domain=domain, **kwargs)

    def initial_message(self) -> bytes:
        self._context = ntlm.NtlmContext(
            self.username,
            self.password,
            domain=self.domain,
            workstation=self.workstation,
            ntlm_compatibility=self.ntlm_compatibility,
        )
        logger.debug(
            'ntlm context with the details: "%s\\%s", *****',
            self.domain or "",
            self.username,
        )
        return self._context.step()

    def response_message(self, challenge: bytes) -> bytes:
        if self._context is None:
            raise RuntimeError(
                "NTLM challenge received before the negotiate message was sent"
            )
        return self._context.step(challenge)

    @property
    def complete(self) -> bool:
        return self._context is not None and self._context.complete
