"""reqchain hooks - pre/post request scripts run by an embedded JavaScript engine.

Hook scripts are JavaScript function bodies evaluated by PythonMonkey
(SpiderMonkey) in a separate worker process. They see only these names:

    request    url, method, headers (array of "Key: Value"), body; edits are sent
    response   copy of the response (post-script only, else null)
    env        the env scope
    vars       every scope, keyed by scope name
    setVar     setVar(scope, key, value) writes into the shared scope (alias set_var)
    ctx        all of the above as properties

Example pre-script:

    request.headers.push("X-Trace: " + (vars.runtime.trace || "none"));
    setVar("runtime", "sent_at", new Date().toISOString());

A ``return`` value becomes the result of :func:`run_hook`. The worker is
killed when the time budget runs out, whatever the script is doing.
"""

from __future__ import annotations

import errno
import json
import logging
import multiprocessing
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

from reqchain.errors import FileError, ScriptError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 5000
STARTUP_TIMEOUT_S = 60

# Context entries copied into the engine; set_var is replayed on return.
_SHARED = ("request", "response", "env", "vars")

# Host bridges PythonMonkey installs globally, shadowed inside hook bodies.
_SHADOWED = ("python", "require", "module", "exports", "bootstrap", "pmEval")

_RUNNER = """
(function (code, payload, shadowed) {
  try {
    const ctx = JSON.parse(payload);
    const vars = ctx.vars || {};
    const env = vars.env || (vars.env = ctx.env || {});
    const writes = [];
    const setVar = function (scope, key, value) {
      scope = String(scope);
      key = String(key);
      (vars[scope] || (vars[scope] = {}))[key] = value;
      writes.push([scope, key, value === undefined ? null : value]);
    };
    ctx.env = env;
    ctx.vars = vars;
    ctx.setVar = setVar;
    ctx.set_var = setVar;
    const params = ["request", "response", "env", "vars", "setVar", "set_var", "ctx"];
    const hook = new Function(...params.concat(JSON.parse(shadowed)), code);
    const result = hook(ctx.request, ctx.response, env, vars, setVar, setVar, ctx);
    return JSON.stringify({
      request: ctx.request,
      writes: writes,
      result: result === undefined ? null : result,
    });
  } catch (error) {
    const message = error && error.message !== undefined ? error.message : error;
    return JSON.stringify({ error: String(message) });
  }
})
"""


class ScriptTimeout(Exception):
    """The script was still running when its budget ran out."""


class ScriptFailure(Exception):
    """The script threw, or could not be compiled."""


class ScriptEvaluator(Protocol):
    def run(self, code: str, context: dict[str, Any], label: str, timeout_ms: int) -> Any: ...


def _serve(conn) -> None:
    """Worker process entry point: evaluate one script and send back the outcome."""
    import pythonmonkey

    conn.send("ready")
    code, payload = conn.recv()
    try:
        text = pythonmonkey.eval(_RUNNER)(code, payload, json.dumps(list(_SHADOWED)))
    except Exception as e:
        text = json.dumps({"error": str(e)})
    conn.send(str(text))
    conn.close()


class JavaScriptEvaluator:
    """Runs hook source under PythonMonkey in a child process killed at the deadline."""

    def __init__(self, startup_timeout_s: float = STARTUP_TIMEOUT_S):
        self.startup_timeout_s = startup_timeout_s

    def run(self, code: str, context: dict[str, Any], label: str, timeout_ms: int) -> Any:
        payload = json.dumps({name: context.get(name) for name in _SHARED}, default=str)
        text = self._evaluate(code, payload, label, timeout_ms or DEFAULT_TIMEOUT_MS)

        outcome = json.loads(text)
        if "error" in outcome:
            raise ScriptFailure(outcome["error"])
        request = context.get("request")
        if isinstance(request, dict) and isinstance(outcome.get("request"), dict):
            request.clear()
            request.update(outcome["request"])
        set_var = context.get("set_var")
        for scope_name, key, value in outcome.get("writes") or ():
            if set_var is not None:
                set_var(scope_name, key, value)
        return outcome.get("result")

    def _evaluate(self, code: str, payload: str, label: str, timeout_ms: int) -> str:
        mp = multiprocessing.get_context("spawn")
        parent, child = mp.Pipe()
        worker = mp.Process(target=_serve, args=(child,), name=f"reqchain-{label}", daemon=True)
        worker.start()
        child.close()
        try:
            if not parent.poll(self.startup_timeout_s):
                raise ScriptFailure("JavaScript engine did not start")
            parent.recv()
            # The budget covers the script only, not the engine start-up.
            parent.send((code, payload))
            if not parent.poll(timeout_ms / 1000):
                raise ScriptTimeout(timeout_ms)
            return parent.recv()
        except EOFError as e:
            raise ScriptFailure("JavaScript engine exited unexpectedly") from e
        finally:
            if worker.is_alive():
                worker.kill()
            worker.join()
            parent.close()


_default_evaluator = JavaScriptEvaluator()


def run_hook(
    code: str | None,
    context: dict[str, Any],
    label: str = "hook",
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    evaluator: ScriptEvaluator | None = None,
) -> Any:
    """Run a hook script. Any failure becomes a ScriptError naming the hook."""
    if not code:
        return None
    evaluator = evaluator or _default_evaluator
    logger.debug("running %s (%d chars, budget %d ms)", label, len(code), timeout_ms)
    try:
        return evaluator.run(code, context, label, timeout_ms)
    except ScriptTimeout as e:
        raise ScriptError(
            f"{label} execution failed: Script execution timed out after {timeout_ms}ms",
            code="SCRIPT_TIMEOUT",
        ) from e
    except ScriptError:
        raise
    except Exception as e:
        raise ScriptError(f"{label} execution failed: {e}") from e


def build_hook_context(
    request: dict[str, Any],
    response: dict[str, Any] | None,
    scope,
    set_var: Callable[[str, str, Any], None] | None = None,
) -> dict[str, Any]:
    """Context handed to a hook: the only capabilities a script gets."""
    return {
        "request": request,
        "response": response,
        "env": scope.scope("env"),
        "vars": {name: scope[name] for name in scope.names()},
        "set_var": set_var or scope.set,
    }


def load_script_source(value: str | None, base_dir: Path | None = None) -> str | None:
    """Inline script text, or ``@path/to/script.js`` to read it from a file."""
    if not value:
        return None
    value = value.strip()
    if not value.startswith("@"):
        return value
    relative = value[1:].strip()
    if not relative:
        raise ValidationError("Invalid script argument. Use @path/to/script.js")
    path = (base_dir or Path.cwd()) / Path(relative).expanduser()
    try:
        return path.read_text()
    except OSError as e:
        raise FileError(
            f"Unable to read script file: {path}",
            code=errno.errorcode.get(e.errno),
            details={"path": str(path)},
        ) from e
