"""Box builders and a fake detector shared across tests."""

from collections.abc import Sequence

from app.models.box import Box


def gt(x: float, y: float, w: float, h: float, cls: str = "A") -> Box:
    """Ground-truth box shorthand."""
    return Box(x=x, y=y, width=w, height=h, class_name=cls)


def pred(
    x: float, y: float, w: float, h: float, cls: str = "A", conf: float = 0.9
) -> Box:
    """Prediction box shorthand."""
    return Box(x=x, y=y, width=w, height=h, class_name=cls, confidence=conf)


class FakeDetector:
    """Async detector that answers from an ``image -> boxes`` table.

    ``failures`` maps an image to how many leading calls should fail.
    """

    def __init__(
        self,
        answers: dict,
        failures: dict | None = None,
    ) -> None:
        self.answers = answers
        self.failures = dict(failures or {})
        self.calls: list = []

    async def __call__(self, image) -> Sequence[Box]:
        self.calls.append(image)
        if self.failures.get(image, 0) > 0:
            self.failures[image] -= 1
            raise ConnectionError("detector unavailable")
        return self.answers.get(image, [])
