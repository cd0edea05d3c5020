"""
Builds the full message list for every follow-up generation call.

The generation service keeps no memory between calls, so each request replays
the whole dialogue:

    framing (instruction + analysis context)
    u1, a1, u2, a2, ...   prior turns, oldest first
    new user message

Framing comes in two variants, picked per provider:
  - SYSTEM_ROLE: one "system" message (OpenAI-compatible APIs)
  - PRIMING_PAIR: a "user" framing message plus an "assistant" acknowledgement,
    for APIs without a system role in the message list
"""

from enum import Enum
from typing import Dict, List, Sequence

from .stores import Turn

Message = Dict[str, str]

CHAT_INSTRUCTION = """You are a knowledgeable medical AI assistant. You have access to the patient's medical history and previous analysis.

PATIENT MEDICAL CONTEXT:
{context}

Your role:
- Answer questions about the patient's medical history
- Provide clarifications on the medical summary
- Offer additional care guidance when asked
- Maintain professional medical standards

Keep responses concise but informative. Use the medical context to provide specific, relevant answers."""

ACKNOWLEDGEMENT = (
    "I understand. I have reviewed the patient's medical history and am ready to answer "
    "your questions with specific, relevant information based on their records."
)


class FramingVariant(str, Enum):
    SYSTEM_ROLE = "system_role"
    PRIMING_PAIR = "priming_pair"


class ConversationContextBuilder:
    def __init__(self, variant: FramingVariant = FramingVariant.SYSTEM_ROLE, instruction: str = CHAT_INSTRUCTION):
        self.variant = variant
        self.instruction = instruction

    @property
    def framing_length(self) -> int:
        return 1 if self.variant is FramingVariant.SYSTEM_ROLE else 2

    def framing(self, context: str) -> List[Message]:
        preamble = self.instruction.format(context=context)
        if self.variant is FramingVariant.SYSTEM_ROLE:
            return [{"role": "system", "content": preamble}]
        return [
            {"role": "user", "content": preamble},
            {"role": "assistant", "content": ACKNOWLEDGEMENT},
        ]

    def build_request(self, context: str, turns: Sequence[Turn], message: str) -> List[Message]:
        messages = self.framing(context)
        for turn in turns:
            messages.append({"role": "user", "content": turn.user_message})
            messages.append({"role": "assistant", "content": turn.assistant_response})
        messages.append({"role": "user", "content": message})
        return messages
