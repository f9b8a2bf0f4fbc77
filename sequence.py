"""
Lazy sequence streams for recurrent policies.

A sequence batch is delivered one timestep at a time as a `Batch` holding
a presence mask over the batch and the packed rows of the sequences that
are still running. Sequences may end early but never start late.

Recorded data lives on a `Tape`. Every read of a tape opens its own
channel: a producer thread hands batches to the consumer through a queue
of depth 1, in increasing timestep order. Reading a range twice means
opening a second read, never rewinding the first one.
"""
import queue
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

import torch


@dataclass
class Batch:
    """One timestep of a batch of sequences."""
    present: torch.Tensor  # bool, [batch_size]
    packed: torch.Tensor   # [num_present, dim]

    @property
    def num_present(self) -> int:
        return self.packed.shape[0]


class _Failure:
    def __init__(self, exc: BaseException):
        self.exc = exc


_END = object()


def handoff(
    source: Iterable[Any],
    maxsize: int = 1,
    stop: Optional[threading.Event] = None
) -> Iterator[Any]:
    """
    Iterate `source` on a producer thread and yield its items here.

    The producer runs at most `maxsize` items ahead of the consumer.
    Exceptions raised by the producer are re-raised in the consumer.
    Closing the returned generator early sets `stop`; a source that can
    block waiting for data must watch the same event.
    """
    channel: "queue.Queue[Any]" = queue.Queue(maxsize=maxsize)
    if stop is None:
        stop = threading.Event()

    def put(item) -> bool:
        while not stop.is_set():
            try:
                channel.put(item, timeout=0.05)
                return True
            except queue.Full:
                continue
        return False

    def produce():
        try:
            for item in source:
                if not put(item):
                    return
        except Exception as exc:
            put(_Failure(exc))
            return
        put(_END)

    producer = threading.Thread(target=produce, daemon=True)
    producer.start()
    try:
        while True:
            item = channel.get()
            if item is _END:
                return
            if isinstance(item, _Failure):
                raise item.exc
            yield item
    finally:
        stop.set()


class Tape:
    """
    Append-only log of timestep batches.

    One writer appends with `write()` and finishes with `close()`. Readers
    may start before the writer is done; they block until the batch they
    need is recorded or the tape is closed. Recorded batches are never
    modified.
    """

    def __init__(self, batches: Optional[Iterable[Batch]] = None):
        self._batches: List[Batch] = []
        self._closed = False
        self._cond = threading.Condition()
        if batches is not None:
            self._batches.extend(batches)
            self._closed = True

    def write(self, batch: Batch):
        with self._cond:
            if self._closed:
                raise RuntimeError("write to a closed tape")
            self._batches.append(batch)
            self._cond.notify_all()

    def close(self):
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._batches)

    def batches(self) -> List[Batch]:
        """All recorded batches; the tape must be closed."""
        if not self._closed:
            raise RuntimeError("tape is still being written")
        return list(self._batches)

    def _range(self, start: int, end: Optional[int], stop: threading.Event) -> Iterator[Batch]:
        i = start
        while end is None or i < end:
            with self._cond:
                while i >= len(self._batches) and not self._closed:
                    if stop.is_set():
                        return
                    self._cond.wait(0.05)
                if i >= len(self._batches):
                    return
                batch = self._batches[i]
            yield batch
            i += 1

    def read(self, start: int = 0, end: Optional[int] = None) -> Iterator[Batch]:
        """Open a fresh channel over timesteps [start, end)."""
        stop = threading.Event()
        return handoff(self._range(start, end, stop), stop=stop)


class GradAccumulator:
    """Gradient map owned by the caller driving one backward pass."""

    def __init__(self, grad: Dict[Any, Any]):
        self.grad = grad

    def use(self, fn: Callable[[Dict[Any, Any]], None]):
        fn(self.grad)


class Rereader(ABC):
    """A sequence that can be evaluated once and re-read afterwards."""

    @abstractmethod
    def forward(self) -> Iterator[Batch]:
        """Produce the sequence. Single use."""
        pass

    @abstractmethod
    def reread(self, start: int = 0, end: Optional[int] = None) -> Iterator[Batch]:
        """Read already produced timesteps without recomputing them."""
        pass

    @abstractmethod
    def propagate(self, upstream: Iterable[Batch], grad: GradAccumulator):
        """
        Back-propagate `upstream` (one batch per timestep, in timestep
        order) and accumulate parameter gradients into `grad`.
        """
        pass

    def vars(self) -> Dict[str, torch.Tensor]:
        """Parameters this sequence is differentiable with respect to."""
        return {}


class TapeRereader(Rereader):
    """Constant sequence backed by a recorded tape."""

    def __init__(self, tape: Tape):
        self.tape = tape

    def forward(self) -> Iterator[Batch]:
        return self.tape.read()

    def reread(self, start: int = 0, end: Optional[int] = None) -> Iterator[Batch]:
        return self.tape.read(start, end)

    def propagate(self, upstream: Iterable[Batch], grad: GradAccumulator):
        for _ in upstream:
            pass


def step_block(block, state: torch.Tensor, batch: Batch) -> Tuple[torch.Tensor, torch.Tensor]:
    """Run one timestep of `block` on the present rows of `state`."""
    rows = batch.present.nonzero(as_tuple=True)[0]
    new_rows, outputs = block(state[rows], batch.packed)
    return state.index_put((rows,), new_rows), outputs


def _block_vars(block) -> Dict[str, torch.Tensor]:
    named = getattr(block, "named_parameters", None)
    if named is None:
        return {}
    return {name: p for name, p in named() if p.requires_grad}


class BPTT(Rereader):
    """
    Applies a recurrent block to an input sequence and back-propagates
    through the whole unrolled computation.

    Outputs are written to a tape as they are produced, so `reread()`
    never re-runs the block. The autograd graph is retained, so
    `propagate()` may be called any number of times once the forward
    stream is drained.
    """

    def __init__(self, inputs: Rereader, block):
        self.inputs = inputs
        self.block = block
        self.tape = Tape()
        self._outputs: List[torch.Tensor] = []
        self._started = False

    def forward(self) -> Iterator[Batch]:
        if self._started:
            raise RuntimeError("forward() called twice; use reread() or make_reuser()")
        self._started = True
        return self._run()

    def _carry(self, state: torch.Tensor, t: int) -> torch.Tensor:
        return state

    def _run(self) -> Iterator[Batch]:
        state = None
        for t, batch in enumerate(self.inputs.forward()):
            if state is None:
                state = self.block.start_state(batch.present.shape[0])
            state, outputs = step_block(self.block, self._carry(state, t), batch)
            out = Batch(batch.present, outputs)
            self._outputs.append(outputs)
            self.tape.write(out)
            yield out
        self.tape.close()

    def reread(self, start: int = 0, end: Optional[int] = None) -> Iterator[Batch]:
        return self.tape.read(start, end)

    def vars(self) -> Dict[str, torch.Tensor]:
        return _block_vars(self.block)

    def propagate(self, upstream: Iterable[Batch], grad: GradAccumulator):
        if not self.tape.closed:
            raise RuntimeError("propagate() before the forward stream was drained")
        upstream = list(upstream)
        if len(upstream) != len(self._outputs):
            raise ValueError(
                f"expected {len(self._outputs)} upstream batches, got {len(upstream)}"
            )
        variables = self.vars()
        pairs = [
            (out, up.packed) for out, up in zip(self._outputs, upstream)
            if out.requires_grad
        ]

        def accumulate(g):
            names = [name for name in g if name in variables]
            if not names or not pairs:
                return
            outs, ups = zip(*pairs)
            derivs = torch.autograd.grad(
                outs,
                [variables[name] for name in names],
                grad_outputs=ups,
                retain_graph=True,
                allow_unused=True,
            )
            with torch.no_grad():
                for name, d in zip(names, derivs):
                    if d is not None:
                        g[name].add_(d)

        grad.use(accumulate)


class TruncatedBPTT:
    """
    Application strategy that cuts the recurrent state every `window`
    timesteps, bounding how far gradients flow back in time.
    """

    def __init__(self, window: int):
        if window < 1:
            raise ValueError(f"window must be positive, got {window}")
        self.window = window

    def __call__(self, inputs: Rereader, block) -> Rereader:
        return _TruncatedRereader(inputs, block, self.window)


class _TruncatedRereader(BPTT):
    def __init__(self, inputs: Rereader, block, window: int):
        super().__init__(inputs, block)
        self.window = window

    def _carry(self, state: torch.Tensor, t: int) -> torch.Tensor:
        if t > 0 and t % self.window == 0:
            return state.detach()
        return state


def bptt(inputs: Rereader, block) -> Rereader:
    """Default application strategy: full back-propagation through time."""
    return BPTT(inputs, block)


class Reuser(Rereader):
    """
    Memoizing wrapper around a Rereader.

    The first `forward()` evaluates the wrapped sequence. After `reuse()`,
    the next `forward()` opens a fresh read over the recorded outputs
    instead of recomputing them.
    """

    def __init__(self, source: Rereader):
        self.source = source
        self._evaluated = False
        self._consumed = False

    def forward(self) -> Iterator[Batch]:
        if self._consumed:
            raise RuntimeError("forward() already consumed; call reuse() first")
        self._consumed = True
        if self._evaluated:
            return self.source.reread(0)
        self._evaluated = True
        return self.source.forward()

    def reuse(self):
        self._consumed = False

    def reread(self, start: int = 0, end: Optional[int] = None) -> Iterator[Batch]:
        return self.source.reread(start, end)

    def propagate(self, upstream: Iterable[Batch], grad: GradAccumulator):
        self.source.propagate(upstream, grad)

    def vars(self) -> Dict[str, torch.Tensor]:
        return self.source.vars()


def make_reuser(source: Rereader) -> Reuser:
    if isinstance(source, Reuser):
        return source
    return Reuser(source)


ApplyPolicy = Callable[[Rereader, Any], Rereader]
