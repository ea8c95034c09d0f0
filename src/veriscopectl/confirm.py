"""Confirmation gates for destructive operations.

Components never read the terminal themselves. They receive a
:class:`Confirmer` and ask it; the CLI decides which implementation applies
for the invocation (interactive prompts, ``--yes``, or a non-interactive run
that declines everything).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

import typer

from .errors import OperatorAbort


class Confirmer(Protocol):
    """Port used by components to gate destructive actions."""

    def confirm(self, prompt: str, *, default: bool = False) -> bool:
        """Return ``True`` when the operator approves a yes/no question."""
        ...

    def confirm_phrase(self, prompt: str, phrase: str) -> bool:
        """Return ``True`` only when the operator types *phrase* exactly."""
        ...


class InteractiveConfirmer:
    """Ask the operator on the terminal via Typer prompts."""

    def confirm(self, prompt: str, *, default: bool = False) -> bool:
        """Return the operator's yes/no answer."""
        return bool(typer.confirm(prompt, default=default))

    def confirm_phrase(self, prompt: str, phrase: str) -> bool:
        """Require the exact (case-sensitive) *phrase*."""
        answer = typer.prompt(f"{prompt} Type '{phrase}' to continue", default="")
        return str(answer).strip() == phrase


@dataclass(slots=True)
class AutoConfirmer:
    """Approve yes/no gates; used only when the operator passed ``--yes``.

    Typed-phrase gates are never approved by ``--yes`` alone. They are handed
    to *phrases* (the terminal when one is attached) and declined otherwise.
    """

    phrases: Confirmer | None = None

    def confirm(self, prompt: str, *, default: bool = False) -> bool:
        """Approve without asking."""
        return True

    def confirm_phrase(self, prompt: str, phrase: str) -> bool:
        """Delegate to *phrases*; decline when there is nobody to type."""
        if self.phrases is None:
            return False
        return self.phrases.confirm_phrase(prompt, phrase)


@dataclass(slots=True)
class PresetPhraseConfirmer:
    """Answer phrase gates with a phrase given up front (``--confirm-phrase``).

    Yes/no gates go to *base*.
    """

    base: Confirmer
    typed: str

    def confirm(self, prompt: str, *, default: bool = False) -> bool:
        """Defer to the wrapped confirmer."""
        return self.base.confirm(prompt, default=default)

    def confirm_phrase(self, prompt: str, phrase: str) -> bool:
        """Approve only when the preset text matches *phrase* exactly."""
        return self.typed == phrase


class DeclineConfirmer:
    """Decline every gate; used for non-interactive runs without ``--yes``."""

    def confirm(self, prompt: str, *, default: bool = False) -> bool:
        """Decline without asking."""
        return False

    def confirm_phrase(self, prompt: str, phrase: str) -> bool:
        """Decline without asking."""
        return False


@dataclass(slots=True)
class ScriptedConfirmer:
    """Replay prepared answers in order; handy for tests and dry runs."""

    answers: list[str | bool] = field(default_factory=list)
    prompts: list[str] = field(default_factory=list)

    def confirm(self, prompt: str, *, default: bool = False) -> bool:
        """Pop the next answer as a boolean."""
        self.prompts.append(prompt)
        if not self.answers:
            return default
        answer = self.answers.pop(0)
        if isinstance(answer, bool):
            return answer
        return answer.strip().lower() in {"y", "yes"}

    def confirm_phrase(self, prompt: str, phrase: str) -> bool:
        """Pop the next answer and compare it to *phrase* exactly."""
        self.prompts.append(prompt)
        if not self.answers:
            return False
        answer = self.answers.pop(0)
        if isinstance(answer, bool):
            return answer
        return answer.strip() == phrase


def select_confirmer(*, assume_yes: bool, interactive: bool) -> Confirmer:
    """Return the confirmer matching the invocation's flags."""
    if assume_yes:
        return AutoConfirmer(phrases=InteractiveConfirmer() if interactive else None)
    if interactive:
        return InteractiveConfirmer()
    return DeclineConfirmer()


def require(confirmer: Confirmer, prompt: str, *, phrase: str | None = None) -> None:
    """Raise :class:`OperatorAbort` unless the gate is approved."""
    approved = (
        confirmer.confirm_phrase(prompt, phrase)
        if phrase is not None
        else confirmer.confirm(prompt, default=False)
    )
    if not approved:
        raise OperatorAbort(f"Cancelled: {prompt}")


__all__ = [
    "AutoConfirmer",
    "Confirmer",
    "DeclineConfirmer",
    "InteractiveConfirmer",
    "PresetPhraseConfirmer",
    "ScriptedConfirmer",
    "require",
    "select_confirmer",
]
