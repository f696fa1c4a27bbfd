import inspect

from potato.errors import BackendUnavailableError


class _ManualHandle:
    def __init__(self, when, callback):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler:
    def __init__(self):
        self.now = 0.0
        self._handles = []

    def call_later(self, delay, callback):
        handle = _ManualHandle(self.now + delay, callback)
        self._handles.append(handle)
        return handle

    @property
    def pending(self):
        return [h for h in self._handles if not h.cancelled]

    def advance(self, seconds):
        target = self.now + seconds
        while True:
            due = sorted(
                (h for h in self.pending if h.when <= target), key=lambda h: h.when
            )
            if not due:
                break
            handle = due[0]
            self._handles.remove(handle)
            self.now = handle.when
            handle.callback()
        self.now = target


class FakeBackend:
    """Plays one scripted list of units per invocation.

    Script steps may be unit dicts, exceptions to raise, or callables (sync
    or async) run at that point of the stream.
    """

    def __init__(self, *scripts, available=True):
        self.scripts = list(scripts)
        self.requests = []
        self.cancelled = []
        self.available = available

    async def version(self):
        if not self.available:
            raise BackendUnavailableError("Claude Code is not installed")
        return "2.0.0 (Claude Code)"

    async def stream(self, request):
        self.requests.append(request)
        script = self.scripts.pop(0) if self.scripts else [{"done": True}]
        for step in script:
            if isinstance(step, BaseException):
                raise step
            if callable(step):
                result = step()
                if inspect.isawaitable(result):
                    await result
                continue
            yield step

    def cancel(self, process_id):
        self.cancelled.append(process_id)
        return True


def text(content):
    return {"content": content}


def tool(phase, name, tool_id="tool-1", **extra):
    payload = {"tool_id": tool_id, "tool_name": name, "phase": phase}
    payload.update(extra)
    return {"tool": payload}


def done(input_tokens=None, output_tokens=None):
    unit = {"done": True}
    if input_tokens is not None:
        unit["usage"] = {"input_tokens": input_tokens, "output_tokens": output_tokens or 0}
    return unit
