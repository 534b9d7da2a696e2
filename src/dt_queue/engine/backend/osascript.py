"""Action executor that drives DEVONthink through `osascript` JXA scripts."""

from __future__ import annotations

import json
import logging
import re
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dt_queue.engine.backend.base import ActionOutcome, LookupKind
from dt_queue.engine.backend.registry import ActionRegistry
from dt_queue.engine.models import Action

logger = logging.getLogger(__name__)

HELPERS_SCRIPT = ("utils", "helpers")
_SHEBANG = re.compile(r"^#!.*\n")
_SCRIPT_KEYS = ("success", "error")


@dataclass(slots=True)
class JxaScriptRunner:
    """Run `<scripts_dir>/<category>/<name>.js` with the shared helpers prepended."""

    scripts_dir: Path
    osascript: str = "osascript"
    timeout_seconds: int = 60

    def run(self, category: str, name: str, args: list[str] | None = None) -> dict[str, Any]:
        script_path = self.scripts_dir / category / f"{name}.js"
        helpers_path = self.scripts_dir / HELPERS_SCRIPT[0] / f"{HELPERS_SCRIPT[1]}.js"
        try:
            script = _SHEBANG.sub("", script_path.read_text("utf-8"), count=1)
            helpers = helpers_path.read_text("utf-8")
        except FileNotFoundError as error:
            return {"success": False, "error": f"Script not found: {error.filename}"}

        run_args = [self.osascript, "-l", "JavaScript", "-e", f"{helpers}\n{script}", "--"]
        run_args.extend(args or [])
        logger.debug("Running JXA script %s/%s with %d arg(s)", category, name, len(args or []))
        try:
            completed = subprocess.run(  # noqa: S603
                run_args,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return {"success": False, "error": f"Script timed out after {self.timeout_seconds}s"}
        except FileNotFoundError:
            return {"success": False, "error": f"osascript binary not found: {self.osascript}"}

        stdout = completed.stdout.strip()
        payload = _load_dict(stdout)
        if payload is not None:
            return payload
        if completed.returncode != 0:
            message = completed.stderr.strip() or f"osascript exited with {completed.returncode}"
            return {"success": False, "error": message}
        if not stdout:
            return {"success": False, "error": "Empty response from script"}
        return {"success": False, "error": f"Script returned non-JSON output: {stdout[:200]}"}


def _load_dict(text: str) -> dict[str, Any] | None:
    if not text:
        return None
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def outcome_from_payload(payload: dict[str, Any]) -> ActionOutcome:
    """Split a script reply into success flag, result fields and error text."""

    if payload.get("success") is True:
        result = {key: value for key, value in payload.items() if key not in _SCRIPT_KEYS}
        return ActionOutcome.ok(result)
    return ActionOutcome.failed(str(payload.get("error") or "Script reported failure"))


def _record_list(params: dict[str, Any]) -> list[str]:
    uuids = params.get("uuids")
    if isinstance(uuids, list) and uuids:
        return [str(item) for item in uuids]
    return [str(params["uuid"])]


def _pick(params: dict[str, Any], *keys: str) -> dict[str, Any]:
    return {key: params[key] for key in keys if params.get(key) is not None}


class OsascriptActionExecutor:
    """`ActionExecutor` backed by the JXA script library."""

    def __init__(self, runner: JxaScriptRunner) -> None:
        self.runner = runner
        self.registry = ActionRegistry()
        self.registry.register(Action.CREATE, self._create)
        self.registry.register(Action.DELETE, self._delete)
        self.registry.register(Action.MOVE, self._move)
        self.registry.register(Action.MODIFY, self._modify)
        self.registry.register(Action.REPLICATE, self._replicate)
        self.registry.register(Action.DUPLICATE, self._duplicate)
        self.registry.register(Action.CONVERT, self._convert)
        self.registry.register(Action.TAG_ADD, self._tag_add)
        self.registry.register(Action.TAG_REMOVE, self._tag_remove)
        self.registry.register(Action.TAG_MERGE, self._tag_merge)
        self.registry.register(Action.TAG_RENAME, self._tag_rename)
        self.registry.register(Action.TAG_DELETE, self._tag_delete)
        self.registry.register(Action.LINK, self._link)
        self.registry.register(Action.UNLINK, self._unlink)
        self.registry.register(Action.ORGANIZE, self._organize)
        self.registry.register(Action.SUMMARIZE, self._summarize)
        self.registry.register(Action.SEARCH, self._search)
        self.registry.register(Action.CHAT, self._chat)

    def invoke(self, action: Action, params: dict[str, Any]) -> ActionOutcome:
        return self.registry.invoke(action, params)

    def exists(self, kind: LookupKind, value: str, database: str | None = None) -> bool:
        if kind == LookupKind.RECORD:
            payload = self.runner.run("read", "getRecordProperties", [value])
        elif kind == LookupKind.DATABASE:
            payload = self.runner.run("read", "listGroupContents", [value, "/"])
        else:
            if not database:
                return False
            payload = self.runner.run("read", "listGroupContents", [database, value])
        return payload.get("success") is True

    def is_available(self) -> bool:
        payload = self.runner.run("utils", "isRunning")
        return payload.get("success") is True and payload.get("running") is True

    def _write(self, name: str, payload: object) -> ActionOutcome:
        return outcome_from_payload(self.runner.run("write", name, [json.dumps(payload)]))

    def _for_each_record(
        self,
        params: dict[str, Any],
        run_one: Callable[[str], ActionOutcome],
    ) -> ActionOutcome:
        uuids = _record_list(params)
        if len(uuids) == 1:
            return run_one(uuids[0])
        results: list[dict[str, Any]] = []
        for uuid in uuids:
            outcome = run_one(uuid)
            if not outcome.success:
                return ActionOutcome.failed(f"{uuid}: {outcome.error}")
            results.append(outcome.result or {})
        return ActionOutcome.ok({"uuids": uuids, "results": results})

    def _create(self, params: dict[str, Any]) -> ActionOutcome:
        payload = _pick(params, "name", "type", "database", "content", "url", "tags")
        group_path = params.get("group") or params.get("groupPath")
        if group_path:
            payload["groupPath"] = group_path
        return self._write("createRecord", payload)

    def _delete(self, params: dict[str, Any]) -> ActionOutcome:
        uuids = _record_list(params)
        if len(uuids) == 1:
            return outcome_from_payload(self.runner.run("write", "deleteRecord", uuids))
        return self._write("batchDelete", uuids)

    def _move(self, params: dict[str, Any]) -> ActionOutcome:
        payload: dict[str, Any] = {"records": _record_list(params), "to": params["destination"]}
        payload.update(_pick(params, "from", "database"))
        return self._write("moveRecord", payload)

    def _modify(self, params: dict[str, Any]) -> ActionOutcome:
        return self._write(
            "modifyRecordProperties",
            _pick(
                params,
                "uuid",
                "newName",
                "tagsAdd",
                "tagsRemove",
                "tagsReplace",
                "destGroupUuid",
                "comment",
                "customMetadata",
            ),
        )

    def _replicate(self, params: dict[str, Any]) -> ActionOutcome:
        destinations = params.get("destinations") or [params["destination"]]
        args = [str(params["uuid"]), *(str(item) for item in destinations)]
        return outcome_from_payload(self.runner.run("write", "replicateRecord", args))

    def _duplicate(self, params: dict[str, Any]) -> ActionOutcome:
        payload: dict[str, Any] = {
            "records": _record_list(params),
            "to": params["destination"],
            "mode": "duplicate",
        }
        payload.update(_pick(params, "database"))
        return self._write("copyRecord", payload)

    def _convert(self, params: dict[str, Any]) -> ActionOutcome:
        payload = {"uuid": params["uuid"], "to": params.get("to") or "simple"}
        payload.update(_pick(params, "destGroupUuid"))
        return self._write("convertRecord", payload)

    def _tag_add(self, params: dict[str, Any]) -> ActionOutcome:
        return self._for_each_record(
            params,
            lambda uuid: self._write(
                "modifyRecordProperties",
                {"uuid": uuid, "tagsAdd": params["tags"]},
            ),
        )

    def _tag_remove(self, params: dict[str, Any]) -> ActionOutcome:
        return self._for_each_record(
            params,
            lambda uuid: self._write(
                "modifyRecordProperties",
                {"uuid": uuid, "tagsRemove": params["tags"]},
            ),
        )

    def _tag_merge(self, params: dict[str, Any]) -> ActionOutcome:
        return self._write("mergeTags", _pick(params, "database", "target", "sources"))

    def _tag_rename(self, params: dict[str, Any]) -> ActionOutcome:
        return self._write("renameTags", _pick(params, "database", "from", "to"))

    def _tag_delete(self, params: dict[str, Any]) -> ActionOutcome:
        tags = params.get("tags") or [params["tag"]]
        payload: dict[str, Any] = {"tags": tags}
        payload.update(_pick(params, "database"))
        return self._write("deleteTags", payload)

    def _link(self, params: dict[str, Any]) -> ActionOutcome:
        return self._write("linkRecords", self._link_payload(params, mode="link"))

    def _unlink(self, params: dict[str, Any]) -> ActionOutcome:
        return self._write("linkRecords", self._link_payload(params, mode="unlink"))

    @staticmethod
    def _link_payload(params: dict[str, Any], *, mode: str) -> dict[str, Any]:
        payload: dict[str, Any] = {"sourceUuid": params["source"], "mode": mode}
        if params.get("target"):
            payload["targetUuid"] = params["target"]
        for flag in ("wiki", "seeAlso", "search", "chat"):
            if flag in params:
                payload[flag] = params[flag]
        return payload

    def _organize(self, params: dict[str, Any]) -> ActionOutcome:
        options = _pick(params, "prompt", "engine", "model", "rename", "tag", "summarize")
        return self._for_each_record(
            params,
            lambda uuid: self._write("organizeRecord", {"uuid": uuid, **options}),
        )

    def _summarize(self, params: dict[str, Any]) -> ActionOutcome:
        options = _pick(params, "type", "format")
        return self._for_each_record(
            params,
            lambda uuid: self._write("summarizeNative", {"uuid": uuid, **options}),
        )

    def _search(self, params: dict[str, Any]) -> ActionOutcome:
        options = _pick(
            params,
            "database",
            "parentUUID",
            "limit",
            "recordType",
            "comparison",
            "excludeSubgroups",
        )
        args = [str(params["query"]), json.dumps(options)]
        return outcome_from_payload(self.runner.run("read", "search", args))

    def _chat(self, params: dict[str, Any]) -> ActionOutcome:
        payload = _pick(
            params,
            "prompt",
            "promptRecord",
            "records",
            "url",
            "engine",
            "model",
            "temperature",
            "role",
            "mode",
            "usage",
            "format",
            "thinking",
            "toolCalls",
        )
        return outcome_from_payload(self.runner.run("read", "chat", [json.dumps(payload)]))
