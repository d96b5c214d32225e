r"""
Job tracker: lifecycle of chat and image generation jobs.

State machine (the only legal edges):

    pending -> running -> completed
                      \-> failed -> pending   (explicit retry)

Every status write is a conditional single-row UPDATE whose WHERE clause
names the allowed source states, so a write that lost a race is reported
as InvalidTransitionError instead of overwriting newer state.

Image backends that return a remote token are reconciled by ``check()``,
one bounded poll step at a time; ``wait()`` loops over it with an
injectable sleep.
"""
from __future__ import annotations

import asyncio
import csv
import io
import json
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import sessionmaker

from backends.gateway import ProviderGateway
from dashboard.conversations import ConversationStore
from dashboard.db import session_scope
from dashboard.errors import (
    DashboardError,
    InvalidTransitionError,
    JobTimeoutError,
    NotFoundError,
    ProviderConnectionError,
    UpstreamError,
    ValidationError,
    classify_comfy_error,
)
from dashboard.events import EventHub
from dashboard.logging_utils import get_logger
from dashboard.models import JOB_KINDS, JOB_STATUSES, TERMINAL_STATUSES, Job, Result, utcnow
from dashboard.results import result_files
from dashboard.storage import MediaStorage
from shared.format_utils import excerpt
from shared.schemas import ImageRequest

# target status -> statuses it may be entered from
ALLOWED_SOURCES: Dict[str, Tuple[str, ...]] = {
    "running": ("pending",),
    "completed": ("running",),
    "failed": ("running",),
    "pending": ("failed",),
}

EXPORT_COLUMNS = ["id", "name", "kind", "provider", "model", "status", "prompt", "error", "created_at", "completed_at"]

Sleep = Callable[[float], Awaitable[Any]]


class JobTracker:
    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: ProviderGateway,
        events: EventHub,
        storage: MediaStorage,
        conversations: ConversationStore,
        poll_interval_s: float = 1.0,
        poll_max_attempts: int = 120,
        poll_in_background: bool = False,
        sleep: Optional[Sleep] = None,
    ):
        self._sessions = session_factory
        self.gateway = gateway
        self.events = events
        self.storage = storage
        self.conversations = conversations
        self.poll_interval_s = poll_interval_s
        self.poll_max_attempts = poll_max_attempts
        self.poll_in_background = poll_in_background
        self._sleep = sleep or asyncio.sleep
        self._pollers: Dict[str, asyncio.Task] = {}
        self.log = get_logger()

    # ------------------------------------------------------------------
    # store helpers
    # ------------------------------------------------------------------
    def get(self, job_id: str) -> Dict[str, Any]:
        with session_scope(self._sessions) as s:
            job = s.get(Job, job_id)
            if job is None:
                raise NotFoundError(f"Task {job_id} not found")
            data = job.to_dict()
            data["result"] = job.result.to_dict() if job.result else None
            return data

    def _transition(self, job_id: str, target: str, result: Optional[Dict[str, Any]] = None, **fields) -> Dict[str, Any]:
        """Move a job to ``target`` iff it currently sits in an allowed source state."""
        sources = ALLOWED_SOURCES[target]
        values = dict(fields, status=target, updated_at=utcnow())
        with session_scope(self._sessions) as s:
            updated = (
                s.query(Job)
                .filter(Job.id == job_id, Job.status.in_(sources))
                .update(values, synchronize_session=False)
            )
            if not updated:
                current = s.query(Job.status).filter(Job.id == job_id).scalar()
                if current is None:
                    raise NotFoundError(f"Task {job_id} not found")
                raise InvalidTransitionError(job_id, current, target)
            if result is not None:
                s.add(Result(job_id=job_id, **result))
        self.log.info("job_transition", job_id=job_id, status=target)
        return self.get(job_id)

    def _update_running(self, job_id: str, **fields) -> int:
        """Write non-status fields on a job that is still running; returns rows touched."""
        fields["updated_at"] = utcnow()
        with session_scope(self._sessions) as s:
            return (
                s.query(Job)
                .filter(Job.id == job_id, Job.status == "running")
                .update(fields, synchronize_session=False)
            )

    def _spend_poll_attempt(self, job_id: str) -> Optional[int]:
        with session_scope(self._sessions) as s:
            updated = (
                s.query(Job)
                .filter(Job.id == job_id, Job.status == "running")
                .update({Job.poll_attempts: Job.poll_attempts + 1, Job.updated_at: utcnow()}, synchronize_session=False)
            )
            if not updated:
                return None
            return s.query(Job.poll_attempts).filter(Job.id == job_id).scalar()

    async def _announce(self, job: Dict[str, Any]) -> None:
        """Publish the job's new state; failures here never touch stored state."""
        status = job["status"]
        payload = {k: v for k, v in job.items() if k != "input"}
        await self.events.publish(f"task:{status}", payload, job_id=job["id"])
        if status == "completed":
            await self.events.publish(
                "notification",
                {"type": "success", "title": "Task Complete", "message": f'Task "{job["name"]}" completed successfully'},
                job_id=job["id"],
            )
        elif status == "failed":
            await self.events.publish(
                "notification",
                {"type": "error", "title": "Task Failed", "message": f'Task "{job["name"]}" failed: {job["error"]}'},
                job_id=job["id"],
            )

    async def _fail(self, job_id: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        job = self._transition(job_id, "failed", error=message, error_details=details, completed_at=utcnow())
        await self._announce(job)
        return job

    # ------------------------------------------------------------------
    # creation
    # ------------------------------------------------------------------
    async def create(
        self,
        kind: str,
        provider: str,
        model: str,
        prompt: str,
        input: Optional[Dict[str, Any]] = None,
        name: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if kind not in JOB_KINDS:
            raise ValidationError(f"type must be one of: {', '.join(JOB_KINDS)}")
        with session_scope(self._sessions) as s:
            job = Job(
                name=name or excerpt(prompt) or f"{provider} {kind}",
                kind=kind,
                provider=provider,
                model=model or None,
                prompt=prompt,
                input=input or {},
                status="pending",
                progress=0,
                conversation_id=conversation_id,
            )
            s.add(job)
            s.flush()
            job_id = job.id
        self.log.info("job_created", job_id=job_id, kind=kind, provider=provider, model=model)
        created = self.get(job_id)
        await self._announce(created)
        return created

    async def create_chat(
        self,
        provider: str,
        model: str,
        messages: List[Dict[str, str]],
        conversation_id: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
        name: Optional[str] = None,
        profile_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Validate a chat request and record it as a pending text job."""
        self.gateway.validate_chat(provider, model, profile_id=profile_id)
        if not messages:
            raise ValidationError("messages must not be empty")
        if conversation_id:
            self.conversations.get(conversation_id)
        return await self.create(
            "text",
            provider,
            model,
            prompt=messages[-1]["content"],
            input={"messages": messages, "options": options or {}, "profile_id": profile_id},
            name=name,
            conversation_id=conversation_id,
        )

    async def create_image(self, request: ImageRequest) -> Dict[str, Any]:
        """Validate an image request and record it as a pending image job."""
        backend = self.gateway.validate_image(request)
        return await self.create(
            "image",
            request.provider,
            request.model or backend.default_model or "",
            prompt=request.prompt,
            input={"request": request.model_dump(mode="json")},
            name=request.name,
        )

    async def submit_chat(self, provider, model, messages, conversation_id=None, options=None, profile_id=None) -> Dict[str, Any]:
        job = await self.create_chat(
            provider, model, messages, conversation_id=conversation_id, options=options, profile_id=profile_id
        )
        return await self.dispatch(job["id"])

    async def submit_image(self, request: ImageRequest) -> Dict[str, Any]:
        job = await self.create_image(request)
        return await self.dispatch(job["id"])

    # ------------------------------------------------------------------
    # dispatch
    # ------------------------------------------------------------------
    async def dispatch(self, job_id: str) -> Dict[str, Any]:
        """
        Send a pending job to its provider.

        The job is marked running first, so any provider error moves it to
        failed (with the error stored) before being re-raised.
        """
        job = self._transition(job_id, "running", error=None)
        await self._announce(job)

        with self.log.job_context(job_id, job["kind"], provider=job["provider"], model=job["model"]) as ctx:
            try:
                if job["kind"] == "text":
                    return await self._run_chat(job, ctx)
                return await self._run_image(job, ctx)
            except DashboardError as exc:
                exc.job_id = job_id
                await self._fail_dispatch(job_id, exc.message)
                raise
            except Exception as exc:
                await self._fail_dispatch(job_id, f"Internal error: {exc}")
                raise

    async def _fail_dispatch(self, job_id: str, message: str) -> None:
        try:
            await self._fail(job_id, message)
        except InvalidTransitionError as exc:
            # the job already settled; its stored outcome stands
            self.log.warning("job_fail_skipped", job_id=job_id, current=exc.current, error=message)

    async def _run_chat(self, job: Dict[str, Any], ctx) -> Dict[str, Any]:
        messages = job["input"].get("messages") or [{"role": "user", "content": job["prompt"]}]
        reply = await self.gateway.chat(
            job["provider"],
            job["model"] or "",
            messages,
            job["input"].get("options"),
            profile_id=job["input"].get("profile_id"),
        )
        ctx.milestone("job_reply_received", tokens_used=reply.tokens_used, finish_reason=reply.finish_reason)

        done = self._transition(
            job["id"],
            "completed",
            progress=100,
            completed_at=utcnow(),
            result={
                "type": "text",
                "content": reply.content,
                "meta": {
                    "model": reply.model,
                    "tokens_used": reply.tokens_used,
                    "finish_reason": reply.finish_reason,
                },
            },
        )
        if job["conversation_id"]:
            try:
                self.conversations.append_message(job["conversation_id"], "user", messages[-1]["content"])
                self.conversations.append_message(job["conversation_id"], "assistant", reply.content)
            except NotFoundError:
                # deleted while the reply was in flight; the job result still holds it
                self.log.warning("job_conversation_gone", job_id=job["id"], conversation_id=job["conversation_id"])
        await self._announce(done)
        return done

    async def _run_image(self, job: Dict[str, Any], ctx) -> Dict[str, Any]:
        request = ImageRequest.model_validate(job["input"]["request"])
        submission = await self.gateway.submit_image(request)

        job_input = dict(job["input"], resolved=submission.resolved)
        if submission.token:
            self._update_running(job["id"], remote_token=submission.token, input=job_input)
            ctx.milestone("job_submitted", remote_token=submission.token)
            running = self.get(job["id"])
            await self.events.publish("task:progress", {"id": job["id"], "progress": running["progress"]}, job_id=job["id"])
            if self.poll_in_background:
                self.start_polling(job["id"])
            return running

        self._update_running(job["id"], input=job_input)
        files = [await self.storage.save(job["id"], artifact) for artifact in submission.artifacts]
        ctx.milestone("job_artifacts_stored", files=len(files))
        return await self._complete_image(job["id"], files)

    async def _complete_image(self, job_id: str, files: List[Dict[str, Any]]) -> Dict[str, Any]:
        if not files:
            return await self._fail(job_id, "Provider reported success but returned no images")
        job = self.get(job_id)
        resolved = job["input"].get("resolved") or {}
        done = self._transition(
            job_id,
            "completed",
            progress=100,
            completed_at=utcnow(),
            result={
                "type": "image",
                "content": files[0]["path"],
                "meta": {
                    "files": files,
                    "remote_token": job["remote_token"],
                    "parameters": resolved.get("parameters") or {},
                },
            },
        )
        await self._announce(done)
        return done

    # ------------------------------------------------------------------
    # reconciliation
    # ------------------------------------------------------------------
    async def check(self, job_id: str) -> Dict[str, Any]:
        """
        One reconciliation step against the remote backend.

        Terminal and pending jobs are returned as stored without any remote
        call. For a running job with a remote token one poll attempt is
        spent; once the attempt budget is used up the job fails as timed out.
        """
        job = self.get(job_id)
        if job["status"] != "running" or not job["remote_token"]:
            return job

        attempts = self._spend_poll_attempt(job_id)
        if attempts is None:
            return self.get(job_id)

        try:
            return await self._reconcile(job, attempts)
        except InvalidTransitionError as exc:
            # a concurrent check already moved the job
            self.log.debug("job_check_superseded", job_id=job_id, current=exc.current)
            return self.get(job_id)

    async def _reconcile(self, job: Dict[str, Any], attempts: int) -> Dict[str, Any]:
        job_id, provider = job["id"], job["provider"]
        try:
            status = await self.gateway.check_image(provider, job["remote_token"])
        except (ProviderConnectionError, UpstreamError) as exc:
            # transient; the attempt still counts against the budget
            self.log.warning("job_check_unreachable", job_id=job_id, attempt=attempts, error=exc.message)
            status = None

        if status is not None and status.state == "completed":
            try:
                files = [
                    await self.storage.save(job_id, await self.gateway.fetch_artifact(provider, ref))
                    for ref in status.outputs
                ]
            except ProviderConnectionError as exc:
                self.log.warning("job_artifact_fetch_unreachable", job_id=job_id, error=exc.message)
            except UpstreamError as exc:
                return await self._fail(job_id, f"Could not fetch output: {exc.message}")
            else:
                return await self._complete_image(job_id, files)
        elif status is not None and status.state == "failed":
            classified = classify_comfy_error(status.error or "")
            self.log.error(
                "job_remote_failed",
                job_id=job_id,
                error=status.error,
                category=classified["category"],
            )
            return await self._fail(
                job_id,
                f"{classified['short']} {status.error or ''}".strip(),
                details={"category": classified["category"], "action": classified["action"]},
            )

        if attempts >= self.poll_max_attempts:
            return await self._fail(
                job_id,
                f"Timed out waiting for {provider} after {attempts} status checks "
                f"(~{attempts * self.poll_interval_s:.0f}s)",
            )
        return self.get(job_id)

    async def wait(self, job_id: str, interval: Optional[float] = None) -> Dict[str, Any]:
        """Poll ``check()`` until the job is terminal; bounded by the attempt budget."""
        interval = self.poll_interval_s if interval is None else interval
        idle_rounds = 0
        while True:
            job = await self.check(job_id)
            if job["status"] in TERMINAL_STATUSES or job["status"] == "pending":
                return job
            if not job["remote_token"]:
                # dispatch still in flight on another task
                idle_rounds += 1
                if idle_rounds > self.poll_max_attempts:
                    raise JobTimeoutError(f"Task {job_id} did not receive a remote token in time")
            await self._sleep(interval)

    @property
    def active_pollers(self) -> List[str]:
        return list(self._pollers)

    def start_polling(self, job_id: str) -> None:
        if job_id in self._pollers:
            return
        task = asyncio.create_task(self._poll_to_completion(job_id))
        self._pollers[job_id] = task
        task.add_done_callback(lambda _t: self._pollers.pop(job_id, None))

    async def _poll_to_completion(self, job_id: str) -> None:
        try:
            job = await self.wait(job_id)
            self.log.info("job_background_poll_done", job_id=job_id, status=job["status"])
        except DashboardError as exc:
            self.log.error("job_background_poll_failed", job_id=job_id, error=exc.message)

    async def shutdown(self) -> None:
        self.log.info("job_tracker_shutdown", pollers=len(self._pollers))
        for task in list(self._pollers.values()):
            task.cancel()
        if self._pollers:
            await asyncio.gather(*self._pollers.values(), return_exceptions=True)
        self._pollers.clear()

    # ------------------------------------------------------------------
    # retry / delete
    # ------------------------------------------------------------------
    async def retry(self, job_id: str) -> Dict[str, Any]:
        """failed -> pending; clears error, progress and remote bookkeeping."""
        job = self._transition(
            job_id,
            "pending",
            error=None,
            error_details=None,
            progress=0,
            remote_token=None,
            poll_attempts=0,
            completed_at=None,
        )
        await self._announce(job)
        return job

    def delete(self, job_id: str) -> None:
        with session_scope(self._sessions) as s:
            job = s.get(Job, job_id)
            if job is None:
                raise NotFoundError(f"Task {job_id} not found")
            if job.status == "running":
                raise ValidationError("Cannot delete a running task")
            files = result_files(job.result) if job.result else []
            s.delete(job)
        for relative in files:
            self.storage.remove(relative)
        self.storage.remove_job(job_id)
        self.log.info("job_deleted", job_id=job_id)

    # ------------------------------------------------------------------
    # listing / history / export
    # ------------------------------------------------------------------
    def list(
        self,
        status: Optional[str] = None,
        kind: Optional[str] = None,
        provider: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        if status is not None and status not in JOB_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(JOB_STATUSES)}")
        return self._page(self._filters(statuses=[status] if status else None, kind=kind, provider=provider), page, limit)

    def history(
        self,
        status: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        search: Optional[str] = None,
        provider: Optional[str] = None,
        kind: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        """Terminal jobs, newest first, filtered by provider, type, date range and text search."""
        if status is not None and status not in TERMINAL_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(TERMINAL_STATUSES)}")
        filters = self._filters(
            statuses=[status] if status else list(TERMINAL_STATUSES),
            start_date=start_date,
            end_date=end_date,
            search=search,
            provider=provider,
            kind=kind,
        )
        return self._page(filters, page, limit)

    def export_history(self, fmt: str = "json", **history_filters) -> Tuple[str, str, str]:
        """Render history as (body, media_type, filename)."""
        if fmt not in ("json", "csv"):
            raise ValidationError("format must be 'json' or 'csv'")
        filters = self._filters(
            statuses=[history_filters["status"]] if history_filters.get("status") else list(TERMINAL_STATUSES),
            start_date=history_filters.get("start_date"),
            end_date=history_filters.get("end_date"),
            search=history_filters.get("search"),
            provider=history_filters.get("provider"),
            kind=history_filters.get("kind"),
        )
        with session_scope(self._sessions) as s:
            rows = [j.to_dict() for j in s.query(Job).filter(*filters).order_by(Job.created_at.desc()).all()]

        stamp = utcnow().strftime("%Y%m%d-%H%M%S")
        if fmt == "json":
            return json.dumps(rows, indent=2), "application/json", f"task-history-{stamp}.json"

        buf = io.StringIO()
        writer = csv.DictWriter(buf, fieldnames=EXPORT_COLUMNS, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow(row)
        return buf.getvalue(), "text/csv", f"task-history-{stamp}.csv"

    @staticmethod
    def _filters(
        statuses: Optional[List[str]] = None,
        kind: Optional[str] = None,
        provider: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        search: Optional[str] = None,
    ) -> list:
        filters = []
        if statuses:
            filters.append(Job.status.in_(statuses))
        if kind:
            filters.append(Job.kind == kind)
        if provider:
            filters.append(Job.provider == provider)
        if start_date:
            filters.append(Job.created_at >= start_date)
        if end_date:
            filters.append(Job.created_at <= end_date)
        if search:
            pattern = f"%{search}%"
            filters.append(or_(Job.name.ilike(pattern), Job.prompt.ilike(pattern)))
        return filters

    def _page(self, filters: list, page: int, limit: int) -> Dict[str, Any]:
        page, limit = max(page, 1), min(max(limit, 1), 100)
        with session_scope(self._sessions) as s:
            q = s.query(Job).filter(*filters)
            total = q.count()
            rows = q.order_by(Job.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
            items = [j.to_dict() for j in rows]
        return {"items": items, "total": total, "page": page, "limit": limit}
