"""Output sink written by the stream event processor.

The runtime owns the text a caller renders live during a turn. Output only
grows, with a single exception: ``replace_output_segment`` may rewrite the
text after an offset the runtime previously reported. Reasoning is held as
lines so narration lines can be rewritten in place.
"""

from __future__ import annotations

from typing import Callable, Iterable, Protocol

from .types import ImageFragment

UpdateListener = Callable[[str], None]


class OutputRuntime(Protocol):
    def output_length(self) -> int:
        ...

    def append_output(self, text: str) -> None:
        ...

    def replace_output_segment(self, offset: int, text: str) -> None:
        ...

    def get_output_text(self) -> str:
        ...

    def append_reasoning_delta(self, text: str) -> None:
        ...

    def append_reasoning_line(self, text: str) -> int:
        ...

    def update_reasoning_line(self, index: int, text: str) -> None:
        ...

    def ensure_reasoning_trailing_newline(self) -> None:
        ...

    def get_reasoning_text(self) -> str:
        ...

    def collect_images(self, fragments: Iterable[ImageFragment]) -> list[ImageFragment]:
        ...

    def get_images(self) -> list[ImageFragment]:
        ...


class BufferedOutputRuntime:
    """In-memory ``OutputRuntime`` with an optional change listener.

    The listener receives ``"output"``, ``"reasoning"`` or ``"images"``
    after every mutation so a UI can re-render the affected region.
    """

    __slots__ = ("_output", "_reasoning_lines", "_images", "_seen_images", "_listener")

    def __init__(self, listener: UpdateListener | None = None) -> None:
        self._output = ""
        # Reasoning text is always "\n".join(self._reasoning_lines)
        self._reasoning_lines: list[str] = []
        self._images: list[ImageFragment] = []
        self._seen_images: set[str] = set()
        self._listener = listener

    def _notify(self, region: str) -> None:
        if self._listener is not None:
            self._listener(region)

    # Output -------------------------------------------------------------

    def output_length(self) -> int:
        return len(self._output)

    def append_output(self, text: str) -> None:
        if not text:
            return
        self._output += text
        self._notify("output")

    def replace_output_segment(self, offset: int, text: str) -> None:
        if offset < 0 or offset > len(self._output):
            raise ValueError(
                f"Replace offset {offset} outside output of length {len(self._output)}"
            )
        self._output = self._output[:offset] + text
        self._notify("output")

    def get_output_text(self) -> str:
        return self._output

    # Reasoning ----------------------------------------------------------

    def append_reasoning_delta(self, text: str) -> None:
        if not text:
            return
        pieces = text.split("\n")
        if not self._reasoning_lines:
            self._reasoning_lines.append("")
        self._reasoning_lines[-1] += pieces[0]
        self._reasoning_lines.extend(pieces[1:])
        self._notify("reasoning")

    def append_reasoning_line(self, text: str) -> int:
        """Append *text* as its own line and return the line's index."""

        lines = self._reasoning_lines
        if lines and lines[-1] == "":
            lines[-1] = text
        else:
            lines.append(text)
        index = len(lines) - 1
        lines.append("")
        self._notify("reasoning")
        return index

    def update_reasoning_line(self, index: int, text: str) -> None:
        if not 0 <= index < len(self._reasoning_lines):
            raise IndexError(f"No reasoning line at index {index}")
        self._reasoning_lines[index] = text
        self._notify("reasoning")

    def ensure_reasoning_trailing_newline(self) -> None:
        if self._reasoning_lines and self._reasoning_lines[-1] != "":
            self._reasoning_lines.append("")
            self._notify("reasoning")

    def get_reasoning_text(self) -> str:
        return "\n".join(self._reasoning_lines)

    # Images -------------------------------------------------------------

    def collect_images(self, fragments: Iterable[ImageFragment]) -> list[ImageFragment]:
        """Store fragments not seen before and return the newly added ones."""

        added: list[ImageFragment] = []
        for fragment in fragments:
            if fragment.value in self._seen_images:
                continue
            self._seen_images.add(fragment.value)
            self._images.append(fragment)
            added.append(fragment)
        if added:
            self._notify("images")
        return added

    def get_images(self) -> list[ImageFragment]:
        return list(self._images)


__all__ = ["BufferedOutputRuntime", "OutputRuntime", "UpdateListener"]
