import json
import logging

from parley.errors import ToolExecutionError, ToolLoopExceededError
from parley.events import ToolCallComplete
from parley.instrumentation import record_error, tool_span
from parley.message import (
    ContextMessage,
    MessageRole,
    ToolCallRecord,
    ToolCallRequestMessage,
    ToolCallResultMessage,
)
from parley.tools import ToolRegistry

logger = logging.getLogger(__name__)

UNKNOWN_TOOL = "unknown tool"


def result_text(result) -> str:
    """What the model sees for a tool result: the payload's ``text``
    summary when it has one, its JSON otherwise.
    """
    if isinstance(result, dict) and isinstance(result.get("text"), str):
        return result["text"]
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


class ToolExecutionEngine:
    """Runs the tool calls a round requested and builds the next context.

    Handler failures never escape: an unknown tool becomes
    ``{"error": "unknown tool"}`` and a raising handler becomes
    ``{"error": <message>}``. Only the round cap ends a session.
    """

    def __init__(self, registry: ToolRegistry, max_rounds: int = 5):
        self.registry = registry
        self.max_rounds = max_rounds

    def check_round(self, round_count: int) -> None:
        """Raises ToolLoopExceededError once *round_count* reaches the cap."""
        if round_count >= self.max_rounds:
            raise ToolLoopExceededError(
                f"Stopped after {round_count} rounds: the model kept requesting tools"
            )

    async def _invoke(self, call: ToolCallComplete):
        tool = self.registry.get(call.name)
        if tool is None:
            logger.warning(f"Tool not found: {call.name}")
            return {"error": UNKNOWN_TOOL}
        logger.info(f"Calling {call.name} with {call.arguments}")
        try:
            result = await tool(**call.arguments)
        except Exception as e:
            raise ToolExecutionError(str(e) or type(e).__name__) from e
        return result.output

    async def execute(self, call: ToolCallComplete) -> ToolCallRecord:
        async with tool_span(call.name, call.id) as span:
            try:
                output = await self._invoke(call)
            except ToolExecutionError as e:
                logger.error(f"Tool {call.name} raised: {e}")
                record_error(span, "tool_error", str(e))
                output = {"error": str(e)}
        return ToolCallRecord(id=call.id, name=call.name, arguments=call.arguments, result=output)

    async def execute_all(self, calls: list[ToolCallComplete]) -> list[ToolCallRecord]:
        """Run *calls* one after another, in the order they were requested."""
        records = []
        for call in calls:
            records.append(await self.execute(call))
        return records

    @staticmethod
    def extend_context(
            context: list[ContextMessage],
            partial_text: str,
            records: list[ToolCallRecord],
    ) -> list[ContextMessage]:
        """Context for the next round: the old context, the assistant turn
        that asked for the tools, and one result message per call.
        """
        extended = list(context)
        extended.append(ToolCallRequestMessage(
            role=MessageRole.ASSISTANT, content=partial_text, tool_calls=records,
        ))
        for record in records:
            extended.append(ToolCallResultMessage(
                role=MessageRole.TOOL,
                content=result_text(record.result),
                tool_call_id=record.id,
                name=record.name,
            ))
        return extended
