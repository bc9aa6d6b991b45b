"""reqchain sequence - run an ordered list of targets over one shared scope."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from reqchain.core import validate_identifier
from reqchain.errors import ReqchainError, ValidationError
from reqchain.executor import Auth, RequestEngine, RequestSpec
from reqchain.hooks import load_script_source
from reqchain.runner import RunResult, run_request

logger = logging.getLogger(__name__)

SEQUENCE_SCOPE = "sequence"

_URL_LIKE_RE = re.compile(r"^https?://", re.IGNORECASE)


@dataclass
class SequenceOptions:
    """Flags shared by every step. ``None`` means "not given"."""

    continue_on_fail: bool = False
    auth: Auth | None = None
    timeout_ms: int | None = None
    insecure: bool | None = None
    follow_redirects: bool | None = None
    headers: tuple[str, ...] = ()
    extract: list[str] = field(default_factory=list)
    assertions: list[str] = field(default_factory=list)
    assert_format: str = "tap"
    pre_script: str | None = None
    post_script: str | None = None


@dataclass(frozen=True)
class SequenceTarget:
    label: str
    record: dict[str, Any]


@dataclass(frozen=True)
class SequenceStepResult:
    label: str
    status: int | None = None
    duration_ms: float | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def is_url_like(target: str) -> bool:
    return bool(_URL_LIKE_RE.match(target)) or target.startswith("{{")


def resolve_target(spec: str, store) -> SequenceTarget:
    """A URL (or ``{{...}}`` template) becomes a GET; ``coll:req`` is loaded from *store*."""
    target = spec.strip() if isinstance(spec, str) else ""
    if is_url_like(target):
        return SequenceTarget(label=target, record={"url": target, "method": "GET"})
    if ":" in target:
        collection, request = (part.strip() for part in target.split(":", 1))
        validate_identifier(collection, "collection name")
        validate_identifier(request, "request name")
        record = store.read_request(collection, request)
        return SequenceTarget(label=f"{collection}:{request}", record=record)
    raise ValidationError(f'Invalid sequence target: "{spec}". Use collection:request or a URL.')


def merge_rules(local: list[str] | None, shared: list[str] | None) -> list[str]:
    """Union of both rule lists, first occurrence wins, order kept."""
    return list(dict.fromkeys([*(local or []), *(shared or [])]))


def _first_given(*values):
    for value in values:
        if value is not None:
            return value
    return None


def record_auth(record: dict[str, Any]) -> Auth | None:
    if record.get("basic"):
        return Auth.basic(record["basic"])
    if record.get("bearer"):
        return Auth.bearer(record["bearer"])
    return None


def build_step_spec(record: dict[str, Any], options: SequenceOptions) -> RequestSpec:
    """Step-local fields win; shared options fill in whatever the step leaves out."""
    headers = record.get("headers") or []
    if isinstance(headers, dict):
        headers = [f"{k}: {v}" for k, v in headers.items()]
    return RequestSpec(
        url=record.get("url", ""),
        method=record.get("method") or "GET",
        headers=(*options.headers, *headers),
        body=record.get("body"),
        auth=_first_given(record_auth(record), options.auth),
        timeout_ms=_first_given(record.get("timeout_ms"), options.timeout_ms),
        insecure=bool(_first_given(record.get("insecure"), options.insecure, False)),
        follow_redirects=bool(_first_given(record.get("follow_redirects"), options.follow_redirects, False)),
        pre_script=_first_given(load_script_source(record.get("pre_script")), options.pre_script),
        post_script=_first_given(load_script_source(record.get("post_script")), options.post_script),
    )


def run_sequence(
    targets: list[str],
    scope,
    options: SequenceOptions | None = None,
    store=None,
    engine: RequestEngine | None = None,
    on_step: Callable[[str, RunResult], None] | None = None,
    results: list[SequenceStepResult] | None = None,
) -> list[SequenceStepResult]:
    """Run *targets* in order and return one SequenceStepResult per target.

    Pass *results* to collect step results even when a failing step is
    re-raised (``continue_on_fail`` off).
    """
    if not targets:
        raise ValidationError("Sequence command requires at least one request reference")
    options = options or SequenceOptions()
    engine = engine or RequestEngine()
    results = results if results is not None else []
    scope.scope(SEQUENCE_SCOPE)

    for spec in targets:
        label = spec
        try:
            target = resolve_target(spec, store)
            label = target.label
            with scope.overlay("env", target.record.get("env")):
                run = run_request(
                    build_step_spec(target.record, options),
                    scope,
                    engine=engine,
                    assertions=merge_rules(target.record.get("assertions"), options.assertions),
                    assert_format=options.assert_format,
                    extract=merge_rules(target.record.get("extract"), options.extract),
                    extract_scope=SEQUENCE_SCOPE,
                    on_result=(lambda r, label=label: on_step(label, r)) if on_step else None,
                )
        except Exception as e:
            error = e if isinstance(e, ReqchainError) else ReqchainError(str(e) or type(e).__name__)
            results.append(SequenceStepResult(label=label, error=error.message))
            logger.debug("sequence step %s failed: %s", label, error.message)
            if not options.continue_on_fail:
                if error is e:
                    raise
                raise error from e
            continue
        results.append(
            SequenceStepResult(
                label=label,
                status=run.response.status,
                duration_ms=run.response.duration_ms,
            ),
        )
    return results
