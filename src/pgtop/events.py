"""Key events as seen by the state machine."""

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class KeyEvent:
    """
    A normalised key press.

    Printable keys are the character itself ("K", "/", " ", "?"); everything
    else uses Textual's key names ("enter", "escape", "up", "pagedown",
    "backspace", "tab", "ctrl+c", ...).
    """

    key: str

    @classmethod
    def from_textual(cls, event) -> "KeyEvent":
        """Translate a textual.events.Key."""
        if event.key.startswith("ctrl+"):
            return cls(event.key)
        if event.character and event.is_printable:
            return cls(event.character)
        return cls(event.key)

    @property
    def is_char(self) -> bool:
        """True for a single printable character."""
        return len(self.key) == 1 and self.key.isprintable()
