"""Where selections come from: a human at a prompt, or preset answers."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from rich.console import Console
from rich.prompt import Confirm, Prompt

from spotcycle.exceptions import ValidationError

# Progress goes to stderr; stdout carries only command results.
console = Console(stderr=True)


class ChoiceSource(Protocol):
    """Selection capability used by the orchestrator.

    ``key`` names the decision (``region``, ``server_class`` ...) so preset
    sources can answer without knowing the prompt text.
    """

    def choose(self, key: str, prompt: str, options: Sequence[str], default: str | None = None) -> str: ...

    def ask(self, key: str, prompt: str, default: str | None = None) -> str: ...

    def confirm(self, key: str, prompt: str, default: bool = False) -> bool: ...


class PromptChoices:
    """Numbered menus and prompts on the terminal."""

    def __init__(self, console: Console = console) -> None:
        self.console = console

    def choose(self, key: str, prompt: str, options: Sequence[str], default: str | None = None) -> str:
        if not options:
            raise ValidationError(f"No options available for {key}")
        self.console.print(f"[bold]{prompt}[/bold]")
        for i, option in enumerate(options, 1):
            marker = " [dim](default)[/dim]" if option == default else ""
            self.console.print(f"  {i}. {option}{marker}")
        default_index = str(options.index(default) + 1) if default in options else None
        while True:
            reply = Prompt.ask(
                f"Enter your choice (1-{len(options)})",
                default=default_index,
                console=self.console,
            )
            if reply and reply.isdigit() and 1 <= int(reply) <= len(options):
                return options[int(reply) - 1]
            if reply in options:
                return reply
            self.console.print(f"[yellow]Invalid selection ({reply}). Please choose 1-{len(options)}.[/yellow]")

    def ask(self, key: str, prompt: str, default: str | None = None) -> str:
        return Prompt.ask(prompt, default=default, console=self.console)

    def confirm(self, key: str, prompt: str, default: bool = False) -> bool:
        return Confirm.ask(prompt, default=default, console=self.console)


class PresetChoices:
    """Answers supplied up front by CLI flags or tests. Never prompts.

    A missing answer falls back to the caller's default; with no default
    either, the selection is rejected with :class:`ValidationError`.
    """

    def __init__(self, answers: Mapping[str, Any] | None = None) -> None:
        self.answers = {k: v for k, v in (answers or {}).items() if v is not None}

    def choose(self, key: str, prompt: str, options: Sequence[str], default: str | None = None) -> str:
        answer = self.answers.get(key, default)
        if answer is None:
            raise ValidationError(f"No value supplied for {key}", hint=f"pass --{key.replace('_', '-')}")
        answer = str(answer)
        if answer not in options:
            raise ValidationError(
                f"Invalid {key} '{answer}'. Valid options: {', '.join(options)}"
            )
        return answer

    def ask(self, key: str, prompt: str, default: str | None = None) -> str:
        answer = self.answers.get(key, default)
        if answer is None:
            raise ValidationError(f"No value supplied for {key}", hint=f"pass --{key.replace('_', '-')}")
        return str(answer)

    def confirm(self, key: str, prompt: str, default: bool = False) -> bool:
        return bool(self.answers.get(key, default))


class LayeredChoices:
    """Preset answers first, then an interactive fallback for anything unset."""

    def __init__(self, preset: PresetChoices, fallback: ChoiceSource) -> None:
        self.preset = preset
        self.fallback = fallback

    def choose(self, key: str, prompt: str, options: Sequence[str], default: str | None = None) -> str:
        if key in self.preset.answers:
            return self.preset.choose(key, prompt, options, default)
        return self.fallback.choose(key, prompt, options, default)

    def ask(self, key: str, prompt: str, default: str | None = None) -> str:
        if key in self.preset.answers:
            return self.preset.ask(key, prompt, default)
        return self.fallback.ask(key, prompt, default)

    def confirm(self, key: str, prompt: str, default: bool = False) -> bool:
        if key in self.preset.answers:
            return self.preset.confirm(key, prompt, default)
        return self.fallback.confirm(key, prompt, default)
