"""Prompt templates: ``{{name}}`` placeholders plus ``{{#flag}}…{{/flag}}`` and
``{{^flag}}…{{/flag}}`` sections shown when a boolean flag is true / false.

Templates are parsed once into a small node tree and rendered from it.
"""

import re
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Mapping, Union

from scout.errors import ValidationError

# Rendered in this order and handed to the agent as four files.
PROMPT_SEQUENCE = ("implement", "review", "rework", "create_pr")

_TAG_RE = re.compile(r"\{\{\s*(?P<sigil>[#^/]?)\s*(?P<name>[a-zA-Z0-9_]+)\s*\}\}")


class TemplateError(ValidationError):
    pass


@dataclass(frozen=True)
class Text:
    value: str


@dataclass(frozen=True)
class Placeholder:
    name: str


@dataclass(frozen=True)
class Section:
    flag: str
    show_when: bool
    body: tuple["Node", ...]


Node = Union[Text, Placeholder, Section]


def _parse(name: str, text: str) -> tuple[Node, ...]:
    # Stack of (open section tag or None for the root, children collected so far).
    stack: list[tuple[tuple[str, bool] | None, list[Node]]] = [(None, [])]
    pos = 0
    for match in _TAG_RE.finditer(text):
        if match.start() > pos:
            stack[-1][1].append(Text(text[pos : match.start()]))
        pos = match.end()
        sigil, tag = match.group("sigil"), match.group("name")
        if sigil == "":
            stack[-1][1].append(Placeholder(tag))
        elif sigil in ("#", "^"):
            stack.append(((tag, sigil == "#"), []))
        else:
            opened = stack[-1][0]
            if opened is None or opened[0] != tag:
                raise TemplateError(f"Template '{name}': unexpected {{{{/{tag}}}}}")
            _, body = stack.pop()
            stack[-1][1].append(Section(flag=tag, show_when=opened[1], body=tuple(body)))
    if len(stack) != 1:
        raise TemplateError(f"Template '{name}': section '{stack[-1][0][0]}' is never closed")  # type: ignore[index]
    if pos < len(text):
        stack[0][1].append(Text(text[pos:]))
    return tuple(stack[0][1])


@dataclass(frozen=True)
class PromptTemplate:
    name: str
    nodes: tuple[Node, ...]

    @classmethod
    def parse(cls, name: str, text: str) -> "PromptTemplate":
        return cls(name=name, nodes=_parse(name, text))

    def render(self, values: Mapping[str, object], flags: Mapping[str, bool]) -> str:
        out: list[str] = []
        self._render(self.nodes, values, flags, out)
        return "".join(out)

    def _render(
        self,
        nodes: tuple[Node, ...],
        values: Mapping[str, object],
        flags: Mapping[str, bool],
        out: list[str],
    ) -> None:
        for node in nodes:
            if isinstance(node, Text):
                out.append(node.value)
            elif isinstance(node, Placeholder):
                if node.name not in values:
                    raise TemplateError(f"Template '{self.name}': no value for '{node.name}'")
                value = values[node.name]
                out.append("" if value is None else str(value))
            else:
                if node.flag not in flags:
                    raise TemplateError(f"Template '{self.name}': no flag '{node.flag}'")
                if bool(flags[node.flag]) == node.show_when:
                    self._render(node.body, values, flags, out)


def load_template(name: str, prompts_dir: Path | None = None) -> PromptTemplate:
    """Load ``<name>.md`` from ``prompts_dir`` if given, else from the packaged prompts."""
    filename = f"{name}.md"
    if prompts_dir is not None and (Path(prompts_dir) / filename).exists():
        text = (Path(prompts_dir) / filename).read_text(encoding="utf-8")
    else:
        text = resources.files("scout").joinpath("prompts").joinpath(filename).read_text(encoding="utf-8")
    return PromptTemplate.parse(name, text)
