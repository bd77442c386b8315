"""Reply menus: a finite set of labelled choices offered to a user."""

import inspect
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from botmux.models.interaction import Interaction

MenuCallback = Callable[["Interaction", str], Any]


class MenuChoiceError(ValueError):
    """Raised when a user's answer does not match any menu option."""


class ReplyMenu:
    """An ordered set of options resolved by 1-based position or by key.

    ``options`` maps a unique key to the text shown to the user. In numbered
    mode the user picks ``1..n``; otherwise the keys themselves are shown.
    """

    def __init__(
        self,
        name: str,
        options: dict[str, str],
        callback: MenuCallback,
        numbered: bool = True,
    ) -> None:
        self.name = name
        self.options = dict(options)
        self.callback = callback
        self.numbered = numbered

    @property
    def labels(self) -> list[str]:
        """What the user types (or taps) for each option, in order."""
        if self.numbered:
            return [str(i) for i in range(1, len(self.options) + 1)]
        return list(self.options)

    @property
    def text(self) -> str:
        return str(self)

    def __str__(self) -> str:
        lines = [
            f"{label}: {option}"
            for label, option in zip(self.labels, self.options.values())
        ]
        return "\n".join(lines).strip()

    def key_for_index(self, index: int) -> str:
        keys = list(self.options)
        if index < 1 or index > len(keys):
            raise MenuChoiceError(f"Menu {self.name} has no option {index}")
        return keys[index - 1]

    def parse_choice(self, raw: str) -> str:
        """사용자 입력을 메뉴 키로 변환한다. 해석할 수 없으면 MenuChoiceError."""
        raw = (raw or "").strip()
        if self.numbered:
            try:
                index = int(raw)
            except ValueError as exc:
                raise MenuChoiceError(f"{raw!r} is not a menu number") from exc
            return self.key_for_index(index)
        if raw not in self.options:
            raise MenuChoiceError(f"{raw!r} is not an option of menu {self.name}")
        return raw

    async def resolve(self, interaction: "Interaction", key: str) -> None:
        if key not in self.options:
            raise MenuChoiceError(f"{key!r} is not an option of menu {self.name}")
        result = self.callback(interaction, key)
        if inspect.isawaitable(result):
            await result

    async def resolve_index(self, interaction: "Interaction", index: int) -> None:
        await self.resolve(interaction, self.key_for_index(index))
