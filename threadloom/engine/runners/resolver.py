"""Resolve a RepoLocation (and thread overrides) to an ExecutionContext."""
from __future__ import annotations

import logging

from ..errors import InvalidStateError, RemoteConnectionError
from ..models import ConnectionType, RepoLocation, SshConfig, Thread, WslConfig
from .base import DEFAULT_STREAM_LIMIT, ConnectionTestResult, ExecutionContext
from .local import LocalContext
from .ssh import SshContext
from .wsl import WslContext

logger = logging.getLogger(__name__)


class ContextResolver:
    """Builds contexts and remembers connectivity verdicts per target.

    A remote target is tested once before its first use. A failed verdict
    sticks until test() is called again explicitly; resolve() never
    retries on its own.
    """

    def __init__(
        self,
        ssh_connect_timeout: int = 10,
        stream_limit: int = DEFAULT_STREAM_LIMIT,
    ) -> None:
        self._ssh_connect_timeout = ssh_connect_timeout
        self._stream_limit = stream_limit
        self._verdicts: dict[str, ConnectionTestResult] = {}

    def context_for(
        self,
        location: RepoLocation,
        thread: Thread | None = None,
    ) -> ExecutionContext:
        """Build the context without any connectivity check."""
        if thread is not None and thread.use_wsl and location.connection_type == ConnectionType.LOCAL:
            if not thread.wsl_distro:
                raise InvalidStateError(thread.id, "use_wsl is set but no wsl_distro chosen")
            return self.wsl_context(WslConfig(distro=thread.wsl_distro))
        if location.connection_type == ConnectionType.SSH:
            if location.ssh is None:
                raise InvalidStateError(location.id, "ssh location without ssh config")
            return self.ssh_context(location.ssh)
        if location.connection_type == ConnectionType.WSL:
            if location.wsl is None:
                raise InvalidStateError(location.id, "wsl location without wsl config")
            return self.wsl_context(location.wsl)
        return LocalContext(stream_limit=self._stream_limit)

    def ssh_context(self, ssh: SshConfig) -> SshContext:
        return SshContext(
            ssh,
            connect_timeout=self._ssh_connect_timeout,
            stream_limit=self._stream_limit,
        )

    def wsl_context(self, wsl: WslConfig) -> WslContext:
        return WslContext(wsl, stream_limit=self._stream_limit)

    async def resolve(
        self,
        location: RepoLocation,
        thread: Thread | None = None,
    ) -> ExecutionContext:
        """Context for location, raising RemoteConnectionError if unreachable."""
        context = self.context_for(location, thread)
        if context.kind == "local":
            return context
        verdict = self._verdicts.get(context.target_key)
        if verdict is None:
            logger.info("First use of %s, testing connectivity", context.describe())
            verdict = await context.test()
            self._verdicts[context.target_key] = verdict
        if not verdict.ok:
            raise RemoteConnectionError(context.describe(), verdict.error or "unreachable")
        return context

    async def test(self, context: ExecutionContext) -> ConnectionTestResult:
        """Explicit connectivity test; its result replaces any earlier verdict."""
        verdict = await context.test()
        self._verdicts[context.target_key] = verdict
        logger.info(
            "Connectivity test %s: ok=%s error=%s",
            context.describe(), verdict.ok, verdict.error,
        )
        return verdict

    def verdict(self, context: ExecutionContext) -> ConnectionTestResult | None:
        return self._verdicts.get(context.target_key)
