"""
Phase execution wrapper.

Runs one agent call with a deadline, timing and error handling. Anything the
agent raises other than AgentError/PhaseError becomes a PhaseError.
"""

import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Callable, TypeVar

from storypipe.lib.errors import AgentError, PhaseError
from storypipe.lib.models import PipelinePhase
from storypipe.runner.context import RunContext

T = TypeVar("T")


def call_with_deadline(fn: Callable[[], T], timeout: float, phase: str) -> T:
    """Run fn, raising AgentError if it takes longer than timeout seconds.

    timeout <= 0 disables the deadline. The worker thread is abandoned on
    expiry; a subprocess agent enforces its own timeout as well.
    """
    if not timeout or timeout <= 0:
        return fn()
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"agent-{phase}")
    try:
        future = executor.submit(fn)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            raise AgentError(phase, f"Agent timed out after {timeout}s") from None
    finally:
        executor.shutdown(wait=False)


def run_phase(ctx: RunContext, phase: PipelinePhase, retry_attempt: int,
              fn: Callable[[], T], timeout: float = 0) -> T:
    """
    Run a single phase agent call with timing and error handling.

    Records the outcome in ctx and returns what fn returned.
    """
    name = phase.label
    ctx.log(f"Starting phase: {name} (attempt {retry_attempt})")
    start = time.time()

    try:
        result = call_with_deadline(fn, timeout, name)
        duration = time.time() - start
        success = getattr(result, "success", True)
        ctx.record_phase(name, retry_attempt, "passed" if success else "failed", duration,
                         getattr(result, "message", None) or "")
        ctx.log(f"Phase {name} {'passed' if success else 'failed'} ({duration:.2f}s)")
        return result

    except (AgentError, PhaseError) as e:
        duration = time.time() - start
        ctx.record_phase(name, retry_attempt, "error", duration, e.message)
        ctx.log(f"Phase {name} error: {e.message}")
        raise

    except Exception as e:
        duration = time.time() - start
        ctx.record_phase(name, retry_attempt, "error", duration, str(e))
        ctx.log(f"Phase {name} error: {e}")
        raise PhaseError(name, str(e)) from e
