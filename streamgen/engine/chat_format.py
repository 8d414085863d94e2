"""Built-in chat template dialects.

These formatters render an ordered message list into a single prompt string.
They are the fallback used when the engine has no native (richer) template
renderer. Every formatter:

- honours at most one system message: the first one found, wherever it sits;
- renders the remaining turns in input order;
- ends positioned for the assistant to speak. A trailing assistant message is
  left open so the model continues it; otherwise the generation prompt is
  appended;
- is deterministic.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

from .chat_types import ChatMessage


def split_system(messages: Sequence[ChatMessage]) -> tuple[str | None, list[ChatMessage]]:
    """Pick the first system message and drop every other system message."""
    system: str | None = None
    turns: list[ChatMessage] = []
    for msg in messages:
        if msg.role == "system":
            if system is None:
                system = msg.content
            continue
        turns.append(msg)
    return system, turns


class ChatFormatter(ABC):
    """Renders a message list for one template dialect."""

    name: str = ""

    def format(self, messages: Sequence[ChatMessage]) -> str:
        system, turns = split_system(messages)
        return self.render(system, turns)

    @abstractmethod
    def render(self, system: str | None, turns: list[ChatMessage]) -> str:
        pass


class _BracketedInstructionFormatter(ChatFormatter):
    """[INST] ... [/INST] family.

    Subclasses decide how a new instruction turn is opened, how assistant
    replies are closed, and where the system prompt goes.
    """

    bos = "<s>"
    eos = "</s>"

    @abstractmethod
    def _open_turn(self, first: bool) -> str:
        pass

    @abstractmethod
    def _close_reply(self, reply: str) -> str:
        pass

    @abstractmethod
    def _with_system(self, system: str, content: str) -> str:
        pass

    def _instruction_text(self, msg: ChatMessage) -> str:
        if msg.role == "tool":
            label = f"[tool result: {msg.name}]" if msg.name else "[tool result]"
            return f"{label} {msg.content}".strip()
        return msg.content.strip()

    def render(self, system: str | None, turns: list[ChatMessage]) -> str:
        out: list[str] = []
        pending_system = system
        first = True
        last_index = len(turns) - 1
        for i, msg in enumerate(turns):
            if msg.role == "assistant":
                if i == last_index:
                    # Left open: the model continues this reply.
                    out.append(f" {msg.content.strip()}" if msg.content.strip() else "")
                else:
                    out.append(self._close_reply(msg.content.strip()))
                continue

            content = self._instruction_text(msg)
            if pending_system:
                content = self._with_system(pending_system.strip(), content)
            pending_system = None
            out.append(f"{self._open_turn(first)}[INST] {content} [/INST]")
            first = False

        if pending_system:
            # System prompt with no instruction turn to attach to.
            out.append(f"{self._open_turn(first)}[INST] {self._with_system(pending_system.strip(), '')} [/INST]")
        return "".join(out)


class Llama2Formatter(_BracketedInstructionFormatter):
    """Llama-2 chat: every instruction turn is its own <s>...</s> sequence."""

    name = "llama2"

    def _open_turn(self, first: bool) -> str:
        return self.bos

    def _close_reply(self, reply: str) -> str:
        return f" {reply} {self.eos}"

    def _with_system(self, system: str, content: str) -> str:
        return f"<<SYS>>\n{system}\n<</SYS>>\n\n{content}"


class MistralFormatter(_BracketedInstructionFormatter):
    """Mistral instruct: one leading <s>, replies closed with </s>."""

    name = "mistral"

    def _open_turn(self, first: bool) -> str:
        return self.bos if first else ""

    def _close_reply(self, reply: str) -> str:
        return f" {reply}{self.eos}"

    def _with_system(self, system: str, content: str) -> str:
        return f"{system}\n\n{content}" if content else system


class ChatMLFormatter(ChatFormatter):
    """<|im_start|>role ... <|im_end|> tagged turns."""

    name = "chatml"

    im_start = "<|im_start|>"
    im_end = "<|im_end|>"

    def render(self, system: str | None, turns: list[ChatMessage]) -> str:
        out: list[str] = []
        if system is not None:
            out.append(f"{self.im_start}system\n{system}{self.im_end}\n")

        last_index = len(turns) - 1
        for i, msg in enumerate(turns):
            if msg.role == "assistant" and i == last_index:
                out.append(f"{self.im_start}assistant\n{msg.content}")
                return "".join(out)
            out.append(f"{self.im_start}{msg.role}\n{msg.content}{self.im_end}\n")

        out.append(f"{self.im_start}assistant\n")
        return "".join(out)


class LabeledRoleFormatter(ChatFormatter):
    """Plain transcript for models without a known template."""

    name = "plain"

    _labels = {"user": "User", "assistant": "Assistant", "tool": "Tool"}

    def render(self, system: str | None, turns: list[ChatMessage]) -> str:
        out: list[str] = []
        if system is not None:
            out.append(f"System: {system}\n\n")

        last_index = len(turns) - 1
        for i, msg in enumerate(turns):
            if msg.role == "assistant" and i == last_index:
                out.append(f"Assistant: {msg.content}")
                return "".join(out)
            out.append(f"{self._labels[msg.role]}: {msg.content}\n")

        out.append("Assistant: ")
        return "".join(out)
