import threading
from typing import List, Optional, Sequence

import pytest

from llm_core.domain.models import CompletionRequest, CompletionResponse, Message, Model, Usage
from llm_core.providers.base import ProviderAdapter, ProviderConfig
from llm_core.providers.streaming import StreamPipe, raise_if_cancelled


class FakeAdapter(ProviderAdapter):
    """按脚本返回结果的内存 Provider。

    outcomes 中的元素依次被 complete 消费：字符串作为回复文本，异常则被抛出；
    耗尽后回复 pieces 拼接的全文，与 stream 逐段投递的内容一致。
    """

    def __init__(
        self,
        name: str = "fake",
        models: Sequence[str] = ("m1",),
        outcomes: Sequence[object] = (),
        pieces: Sequence[str] = ("hel", "lo"),
        models_error: Optional[Exception] = None,
    ):
        self._name = name
        self._models = list(models)
        self.outcomes: List[object] = list(outcomes)
        self.pieces = list(pieces)
        self.models_error = models_error
        self.calls: List[CompletionRequest] = []
        self.config: Optional[ProviderConfig] = None
        self.closed = False

    @property
    def name(self) -> str:
        return self._name

    def initialize(self, config: ProviderConfig) -> None:
        config.validate()
        self.config = config

    def get_models(self, cancel_event: Optional[threading.Event] = None) -> List[Model]:
        if self.models_error is not None:
            raise self.models_error
        return [Model(id=m, provider=self._name) for m in self._models]

    def complete(self, request, cancel_event=None) -> CompletionResponse:
        raise_if_cancelled(cancel_event, self._name)
        self.calls.append(request)
        outcome = self.outcomes.pop(0) if self.outcomes else "".join(self.pieces)
        if isinstance(outcome, BaseException):
            raise outcome
        return CompletionResponse(
            id=f"resp-{len(self.calls)}",
            model=request.model,
            provider=self._name,
            message=Message(role="assistant", content=str(outcome)),
            usage=Usage(prompt_tokens=1, completion_tokens=1, total_tokens=2),
        )

    def stream(self, request, callback, cancel_event=None) -> None:
        self.calls.append(request)
        pipe = StreamPipe(self._name, request.model, callback, cancel_event)
        for piece in self.pieces:
            pipe.emit_delta(piece)
        pipe.finish("stop", Usage(prompt_tokens=1, completion_tokens=2, total_tokens=3))

    def validate_model(self, model: str) -> None:
        if model not in self._models:
            raise self._model_not_found(model)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def make_adapter():
    return FakeAdapter


@pytest.fixture
def user_request():
    def build(text: str = "hi", model: str = "m1") -> CompletionRequest:
        return CompletionRequest(messages=[Message.text_message("user", text)], model=model)

    return build
