"""One-shot holder for the public hostname."""

from __future__ import annotations

import asyncio

from singleport.core.exceptions import HostnameAlreadyResolvedError


class HostnameCell:
    """Written once by discovery, read by anything that needs the public URL.

    Readers either check ``value`` or ``await wait()``; the value never
    changes after ``publish``.
    """

    def __init__(self, scheme: str = "https") -> None:
        self.scheme = scheme
        self._hostname: str | None = None
        self._event = asyncio.Event()

    @property
    def value(self) -> str | None:
        return self._hostname

    @property
    def resolved(self) -> bool:
        return self._hostname is not None

    @property
    def url(self) -> str | None:
        if self._hostname is None:
            return None
        return f"{self.scheme}://{self._hostname}"

    def publish(self, hostname: str) -> None:
        if self._hostname is not None:
            raise HostnameAlreadyResolvedError(
                f"Hostname already resolved to {self._hostname!r}, refusing {hostname!r}"
            )
        self._hostname = hostname
        self._event.set()

    async def wait(self) -> str:
        await self._event.wait()
        assert self._hostname is not None
        return self._hostname
