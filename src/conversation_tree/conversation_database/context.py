"""
Prompt assembly for the completion service.

'ContextAssembler' turns the ordered messages of a branch into the
'LLMMessage' list sent to the LLM while keeping an estimated token count under
a budget. Tokens are estimated at one per four characters of text; image parts
cost a fixed amount.

System messages are always kept. The other messages are taken newest first: a
message that would not fit even on its own is skipped, and the walk stops at
the first message that would push the total over the budget. The result lists
system messages first, then the kept messages in chronological order.

Attachment text produced by the analyzer (OCR, extraction, summary) is inlined
as extra text parts, so it is budgeted like any other text.
"""

import math
from collections.abc import Sequence

from loguru import logger

from conversation_tree.conversation_database.data_models.message import Attachment, Message
from conversation_tree.errors import NoValidMessagesError
from conversation_tree.llms.base import ContentPart, ImageURL, LLMMessage, Roles

DEFAULT_TOKEN_BUDGET = 8000
DEFAULT_ATTACHMENT_TOKEN_ESTIMATE = 100


def _attachment_parts(attachment: Attachment) -> list[ContentPart]:
    analysis = attachment.analysis
    if attachment.is_image:
        parts = [ContentPart(type="image_url", image_url=ImageURL(url=attachment.url))]
        if analysis and analysis.text and analysis.text.strip():
            parts.append(
                ContentPart(
                    type="text", text=f"[Image: {attachment.name}]\nExtracted text from image:\n{analysis.text}"
                )
            )
        return parts

    file_text = ""
    if analysis:
        file_text = analysis.extracted_text or analysis.text or analysis.summary or ""
    if file_text.strip():
        return [ContentPart(type="text", text=f"[File: {attachment.name}]\n\n{file_text}")]
    return [ContentPart(type="text", text=f"[File: {attachment.name}]")]


def has_content(message: Message) -> bool:
    return bool((message.content or "").strip()) or bool(message.files)


class ContextAssembler:
    """
    Budgeted prompt builder.

    Attributes:
        token_budget: Upper bound on the estimated tokens of the assembled prompt.
        attachment_token_estimate: Cost assigned to every non-text part (images).
    """

    def __init__(
        self,
        token_budget: int = DEFAULT_TOKEN_BUDGET,
        attachment_token_estimate: int = DEFAULT_ATTACHMENT_TOKEN_ESTIMATE,
    ) -> None:
        self.token_budget = token_budget
        self.attachment_token_estimate = attachment_token_estimate

    def to_llm_message(self, message: Message) -> LLMMessage:
        text = (message.content or "").strip()
        role = Roles(message.role)
        if not message.files:
            return LLMMessage(role=role, content=text)

        parts: list[ContentPart] = []
        if text:
            parts.append(ContentPart(type="text", text=text))
        for attachment in message.files:
            parts.extend(_attachment_parts(attachment))

        if len(parts) == 1 and parts[0].type == "text":
            return LLMMessage(role=role, content=parts[0].text or "")
        return LLMMessage(role=role, content=parts)

    def estimate_tokens(self, message: LLMMessage) -> int:
        if isinstance(message.content, str):
            return math.ceil(len(message.content) / 4)
        total = 0
        for part in message.content:
            if part.type == "text" and part.text:
                total += math.ceil(len(part.text) / 4)
            else:
                total += self.attachment_token_estimate
        return total

    def assemble(self, messages: Sequence[Message]) -> list[LLMMessage]:
        """
        Build the prompt from 'messages', given in chronological (branch) order.

        Raises:
            NoValidMessagesError: every message is empty, or nothing fits the budget.
        """
        candidates = [message for message in messages if has_content(message)]
        if not candidates:
            raise NoValidMessagesError("No messages with content to send")

        converted = [self.to_llm_message(message) for message in candidates]
        system_messages = [m for m in converted if m.role == Roles.SYSTEM]
        total = sum(self.estimate_tokens(m) for m in system_messages)

        kept: list[LLMMessage] = []
        skipped = 0
        for message in reversed([m for m in converted if m.role != Roles.SYSTEM]):
            cost = self.estimate_tokens(message)
            if cost > self.token_budget:
                skipped += 1
                continue
            if total + cost > self.token_budget:
                break
            kept.insert(0, message)
            total += cost

        result = [*system_messages, *kept]
        if not result:
            raise NoValidMessagesError(f"No message fits the token budget of {self.token_budget}")

        dropped = len(converted) - len(result)
        if dropped:
            logger.debug(
                f"Context trimmed: kept {len(result)}/{len(converted)} messages "
                f"({skipped} oversized), ~{total} tokens of {self.token_budget}"
            )
        return result
