"""Backend adapter contract and the boundary guard around it."""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

from ..config.logging import get_logger
from .models import BackendCapabilities, BackendKind, CommandResult


class BackendAdapter(ABC):
    """Uniform capability interface every execution backend implements.

    Implementations live outside this package. They are expected to turn
    transport failures into ``False`` or a failed ``CommandResult``; the
    controller additionally wraps them in ``GuardedBackend``.
    """

    kind: BackendKind

    @abstractmethod
    async def start(self) -> bool:
        """Issue whatever brings the server up. True if issuing succeeded."""

    @abstractmethod
    async def stop(self) -> bool:
        """Issue a graceful shutdown. Must be idempotent."""

    @abstractmethod
    async def check_running(self, instant: bool = False) -> bool:
        """Backend-level liveness. ``instant`` bypasses adapter caching."""

    @abstractmethod
    async def run_command(self, text: str) -> CommandResult:
        """Execute an administrative command and return its output."""

    async def check_prerequisites(self) -> BackendCapabilities:
        """Report what this backend needs and whether it is usable."""
        return BackendCapabilities(
            kind=self.kind,
            available=True,
            supports_shell=self.kind is not BackendKind.MANAGED_CLOUD,
        )


class GuardedBackend:
    """Bounds every adapter call and converts failures into plain values.

    Liveness checks, start and stop are bounded by timeouts. Command execution
    is awaited to completion: a long build is expected to return eventually.
    """

    def __init__(
        self,
        adapter: BackendAdapter,
        check_timeout: float = 10.0,
        start_timeout: float = 90.0,
        stop_timeout: float = 30.0,
    ):
        self.adapter = adapter
        self.check_timeout = check_timeout
        self.start_timeout = start_timeout
        self.stop_timeout = stop_timeout
        self.logger = get_logger(__name__, backend=adapter.kind.value)

    @property
    def kind(self) -> BackendKind:
        return self.adapter.kind

    async def start(self) -> bool:
        return await self._bounded_bool("start", self.adapter.start(), self.start_timeout)

    async def stop(self) -> bool:
        return await self._bounded_bool("stop", self.adapter.stop(), self.stop_timeout)

    async def check_running(self, instant: bool = False) -> bool:
        return await self._bounded_bool(
            "check_running",
            self.adapter.check_running(instant=instant),
            self.check_timeout,
        )

    async def run_command(self, text: str) -> CommandResult:
        try:
            result = await self.adapter.run_command(text)
        except Exception as e:
            self.logger.warning("Backend command raised", error=str(e))
            return CommandResult.failure(f"Backend error: {e}")

        if result is None:
            return CommandResult.failure("Backend returned no result")
        return CommandResult(
            stdout=result.stdout or "",
            stderr=result.stderr or "",
            succeeded=bool(result.succeeded),
        )

    async def check_prerequisites(self) -> BackendCapabilities:
        try:
            capabilities = await asyncio.wait_for(
                self.adapter.check_prerequisites(), timeout=self.check_timeout
            )
        except asyncio.TimeoutError:
            return BackendCapabilities(
                kind=self.kind,
                available=False,
                missing=["prerequisite check timed out"],
            )
        except Exception as e:
            self.logger.warning("Backend prerequisite check raised", error=str(e))
            return BackendCapabilities(
                kind=self.kind,
                available=False,
                missing=[f"prerequisite check failed: {e}"],
            )
        return capabilities

    async def _bounded_bool(
        self, operation: str, call, timeout: Optional[float]
    ) -> bool:
        try:
            return bool(await asyncio.wait_for(call, timeout=timeout))
        except asyncio.TimeoutError:
            self.logger.debug(
                "Backend operation timed out",
                operation=operation,
                timeout=timeout,
            )
            return False
        except Exception as e:
            self.logger.debug(
                "Backend operation failed",
                operation=operation,
                error=str(e),
            )
            return False
