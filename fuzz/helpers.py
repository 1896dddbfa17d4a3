from typing import Any

import atheris


class EnhancedDataProvider(atheris.FuzzedDataProvider):
    def ConsumeRandomBytes(self) -> bytes:
        return self.ConsumeBytes(self.ConsumeIntInRange(0, self.remaining_bytes()))

    def ConsumeRandomString(self) -> str:
        return self.ConsumeUnicodeNoSurrogates(self.ConsumeIntInRange(0, self.remaining_bytes()))

    def ConsumeShortString(self) -> str:
        return self.ConsumeUnicodeNoSurrogates(self.ConsumeIntInRange(0, 8))

    def ConsumeTree(self, depth: int = 0) -> Any:
        """A scalar, or a small nested dict of scalars."""
        if depth > 3 or self.ConsumeBool():
            return self.PickValueInList([self.ConsumeInt(2), self.ConsumeShortString(), None])
        return {self.ConsumeShortString(): self.ConsumeTree(depth + 1) for _ in range(self.ConsumeIntInRange(0, 3))}
