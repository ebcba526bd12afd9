"""
Operator decisions for the mount/format guard.

The guard never reads a terminal itself; it asks a DecisionProvider.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Tuple, Union

import click

from .errors import ConfirmationRequired


class Choice(Enum):
    FORMAT = 'format'
    USE_EXISTING = 'use-existing'
    SKIP = 'skip'
    FORMAT_AGAIN = 'format-again'
    ABORT = 'abort'

    @property
    def destructive(self) -> bool:
        return self in (Choice.FORMAT, Choice.FORMAT_AGAIN)


INITIAL_CHOICES = (Choice.FORMAT, Choice.USE_EXISTING, Choice.SKIP)
RECOVERY_CHOICES = (Choice.FORMAT_AGAIN, Choice.SKIP, Choice.ABORT)


@dataclass(frozen=True)
class DecisionRequest:
    """What the guard needs decided, and why."""
    device: str
    reason: str
    options: Tuple[Choice, ...]
    confirmation_hint: str


@dataclass(frozen=True)
class Decision:
    """An operator's answer; destructive choices carry a confirmation phrase."""
    choice: Choice
    confirmation: Optional[str] = None


class DecisionProvider:
    """Interface: answer a DecisionRequest or raise ConfirmationRequired."""

    def decide(self, request: DecisionRequest) -> Decision:
        raise NotImplementedError


class ScriptedDecisions(DecisionProvider):
    """
    Answers from a fixed list, in order.

    Used for non-interactive runs (command-line flags) and tests. Once the
    script is exhausted every further request raises ConfirmationRequired.
    """

    def __init__(self, decisions: Iterable[Union[Decision, Tuple]] = ()):
        self._pending: List[Decision] = []
        for item in decisions:
            if isinstance(item, Decision):
                self._pending.append(item)
            else:
                choice, *rest = item
                self._pending.append(Decision(Choice(choice), rest[0] if rest else None))
        self.requests: List[DecisionRequest] = []

    def decide(self, request: DecisionRequest) -> Decision:
        self.requests.append(request)
        if not self._pending:
            raise ConfirmationRequired(
                f"{request.reason}. Choose one of: "
                f"{', '.join(c.value for c in request.options)}"
            )
        return self._pending.pop(0)


class PromptDecisions(DecisionProvider):
    """
    Interactive terminal prompts via click.
    """

    def decide(self, request: DecisionRequest) -> Decision:
        click.secho(f"WARNING: {request.reason}", fg='yellow')
        value = click.prompt(
            'Choose an option',
            type=click.Choice([c.value for c in request.options]),
        )
        choice = Choice(value)

        confirmation = None
        if choice.destructive:
            click.secho(f"Formatting {request.device} - ALL DATA WILL BE LOST!", fg='red')
            confirmation = click.prompt(
                f"Type '{request.confirmation_hint}' to confirm",
                default='',
                show_default=False,
            )

        return Decision(choice, confirmation)
