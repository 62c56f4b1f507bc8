"""Tool registry for dynamic tool management."""

import asyncio
import time
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from loguru import logger

from errand.agent.tools.base import Tool, ToolErrorInfo, ToolResult
from errand.errors import ToolError, ToolExecutionError, ToolTimeoutError, ValidationError
from errand.providers.base import ToolCallRequest


class ToolRegistry:
    """
    Registry for agent tools.

    Tools are registered once at startup. ``freeze()`` turns the registry into
    a read-only lookup; after that nothing can be added or removed, so
    concurrent sessions can share it without a lock.

    ``dispatch`` never raises for tool problems: unknown names, schema
    mismatches, timeouts, sandbox violations and executor failures all come
    back as a ToolResult carrying an error descriptor.
    """

    def __init__(self, timeout: float = 60.0, max_parallel: int = 1):
        if max_parallel < 1:
            raise ValueError("max_parallel must be >= 1")
        self.timeout = timeout
        self.max_parallel = max_parallel
        self._tools: dict[str, Tool] = {}
        self._view: Mapping[str, Tool] = MappingProxyType(self._tools)
        self._frozen = False

    def register(self, tool: Tool) -> None:
        """Register a tool."""
        if self._frozen:
            raise RuntimeError(f"Tool registry is frozen; cannot register {tool.name}")
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def freeze(self) -> None:
        """Make the registry read-only."""
        if not self._frozen:
            self._frozen = True
            logger.debug("Tool registry frozen with {} tools: {}", len(self._tools), ", ".join(self._tools))

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def tools(self) -> Mapping[str, Tool]:
        return self._view

    def get(self, name: str) -> Tool | None:
        """Get a tool by name."""
        return self._view.get(name)

    def has(self, name: str) -> bool:
        """Check if a tool is registered."""
        return name in self._view

    def get_definitions(self) -> list[dict[str, Any]]:
        """Get all tool definitions in OpenAI format."""
        return [tool.to_schema() for tool in self._view.values()]

    @property
    def tool_names(self) -> list[str]:
        """Get list of registered tool names."""
        return list(self._view.keys())

    def __len__(self) -> int:
        return len(self._view)

    def __contains__(self, name: str) -> bool:
        return name in self._view

    async def dispatch(self, call: ToolCallRequest) -> ToolResult:
        """
        Validate and execute one tool call.

        Returns:
            ToolResult with either output or an error descriptor.
        """
        tool = self._view.get(call.name)
        if tool is None:
            err = ValidationError(
                f"Tool '{call.name}' not found. Available: {', '.join(self.tool_names)}"
            )
            return self._failed(call, err)

        arguments = call.arguments if isinstance(call.arguments, dict) else None
        if arguments is None:
            return self._failed(call, ValidationError(
                f"Arguments for {call.name} must be an object, got {type(call.arguments).__name__}"
            ))

        try:
            problems = tool.validate_params(arguments)
        except ValueError as e:
            return self._failed(call, ValidationError(f"Invalid schema for {call.name}: {e}"))
        known = (tool.parameters or {}).get("properties", {})
        problems += [f"unexpected parameter {k}" for k in arguments if k not in known]
        if problems:
            return self._failed(call, ValidationError(
                f"Invalid parameters for tool '{call.name}': " + "; ".join(problems)
            ))

        started = time.monotonic()
        try:
            output = await asyncio.wait_for(tool.execute(**arguments), timeout=self.timeout)
        except asyncio.TimeoutError:
            return self._failed(call, ToolTimeoutError(
                f"Tool '{call.name}' timed out after {self.timeout}s"
            ))
        except ToolError as e:
            return self._failed(call, e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Tool {} raised", call.name)
            return self._failed(call, ToolExecutionError(f"Error executing {call.name}: {e}"))

        logger.debug("Tool {} ({}) finished in {:.2f}s", call.name, call.id, time.monotonic() - started)
        return ToolResult(call_id=call.id, name=call.name, output=output if isinstance(output, str) else str(output))

    async def dispatch_all(
        self,
        calls: Iterable[ToolCallRequest],
        max_parallel: int | None = None,
    ) -> list[ToolResult]:
        """
        Dispatch several calls with bounded parallelism.

        Results come back in the order of ``calls``; each carries the id of
        the call that produced it. With a limit of 1 (the default) the calls
        run strictly in order.
        """
        calls = list(calls)
        limit = max_parallel or self.max_parallel
        if limit <= 1 or len(calls) <= 1:
            return [await self.dispatch(call) for call in calls]

        semaphore = asyncio.Semaphore(limit)

        async def _bounded(call: ToolCallRequest) -> ToolResult:
            async with semaphore:
                return await self.dispatch(call)

        return list(await asyncio.gather(*(_bounded(c) for c in calls)))

    async def execute(self, name: str, params: dict[str, Any]) -> str:
        """Execute a tool by name and return the provider-facing text."""
        result = await self.dispatch(ToolCallRequest(id=f"direct_{name}", name=name, arguments=params))
        return result.text

    @staticmethod
    def _failed(call: ToolCallRequest, err: ToolError) -> ToolResult:
        logger.warning("Tool {} ({}) failed: [{}] {}", call.name, call.id, err.kind, err.message)
        return ToolResult(
            call_id=call.id,
            name=call.name,
            error=ToolErrorInfo(kind=err.kind, message=err.message),
        )
