"""
Tool Executor

Runs a single tool against a read-only view of the turn (context, data,
history) and returns a ToolExecution record. It never raises for tool
failures: exceptions and ToolResult(success=False) both come back as
success=False with an error message.

Context/data updates requested by a tool are only reported here. The
pipeline is the single place that applies them to the session.
"""

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from ..domain.models import Step, Tool, ToolContext, ToolResult
from ..state.models import Message

logger = logging.getLogger(__name__)


@dataclass
class ToolExecution:
    tool_id: str
    success: bool
    data: Any = None
    error: Optional[str] = None
    context_update: Optional[Dict[str, Any]] = None
    data_update: Optional[Dict[str, Any]] = None
    arguments: Optional[Dict[str, Any]] = None
    meta: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool_id": self.tool_id,
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "arguments": self.arguments,
            "meta": self.meta,
        }


class ToolExecutor:
    async def execute_tool(
        self,
        tool: Tool,
        context: Dict[str, Any],
        data: Dict[str, Any],
        history: Optional[List[Message]] = None,
        arguments: Optional[Dict[str, Any]] = None,
        step: Optional[Step] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ToolExecution:
        arguments = dict(arguments or {})
        tool_context = ToolContext(
            context=dict(context),
            data=dict(data),
            history=list(history or []),
            step=step,
            metadata=dict(metadata or {}),
        )

        try:
            outcome = tool.handler(tool_context, **arguments)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as e:
            logger.error(f"Tool '{tool.id}' raised: {e}")
            return ToolExecution(tool_id=tool.id, success=False, error=str(e), arguments=arguments)

        result = outcome if isinstance(outcome, ToolResult) else ToolResult(data=outcome)
        if not result.success:
            logger.warning(f"Tool '{tool.id}' reported failure: {result.error}")
            return ToolExecution(
                tool_id=tool.id,
                success=False,
                error=result.error or "Tool reported failure",
                arguments=arguments,
                meta=result.meta,
            )

        logger.info(f"Tool '{tool.id}' executed successfully")
        return ToolExecution(
            tool_id=tool.id,
            success=True,
            data=result.data,
            context_update=result.context_update,
            data_update=result.data_update,
            arguments=arguments,
            meta=result.meta,
        )

    async def execute_tools(
        self,
        calls: List[Tuple[Tool, Dict[str, Any]]],
        context: Dict[str, Any],
        data: Dict[str, Any],
        history: Optional[List[Message]] = None,
        step: Optional[Step] = None,
    ) -> List[ToolExecution]:
        """
        Run (tool, arguments) pairs sequentially, stopping at the first failure.

        Each tool sees the data/context updates of the tools before it.
        """
        executions: List[ToolExecution] = []
        context, data = dict(context), dict(data)
        for tool, arguments in calls:
            execution = await self.execute_tool(tool, context, data, history, arguments, step)
            executions.append(execution)
            if not execution.success:
                break
            context.update(execution.context_update or {})
            data.update(execution.data_update or {})
        return executions
