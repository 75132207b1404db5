import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import ValidationError

from harvest.auth import verify_signature
from harvest.clients.github import GitHubClient
from harvest.clients.http import RequestFailure
from harvest.config import get_settings
from harvest.metrics import metrics
from harvest.schemas import JobCancelled, JobQueued, VMRead, WorkflowJobEvent
from harvest.services.dispatch import JobDispatcher
from harvest.services.images import should_handle
from harvest.services.provisioning import JobVMTable


router = APIRouter()
logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/webhook"


class MissingInstallation(ValueError):
    def __init__(self, job_id: int):
        self.job_id = job_id
        super().__init__(f"No installation ID found for {job_id}")


def require_installation(event: WorkflowJobEvent) -> int:
    if event.installation is None:
        raise MissingInstallation(event.workflow_job.id)
    return event.installation.id


def get_dispatcher(request: Request) -> JobDispatcher:
    return request.app.state.dispatcher


def get_github(request: Request) -> GitHubClient:
    return request.app.state.github


def get_table(request: Request) -> JobVMTable:
    return request.app.state.table


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/metrics")
def metrics_endpoint() -> dict[str, int]:
    return metrics.snapshot()


@router.get("/v1/vms", response_model=list[VMRead])
def vm_list(table: JobVMTable = Depends(get_table)) -> list[VMRead]:
    return [
        VMRead(job_id=vm.job_id, name=vm.name, image=vm.image, state=vm.state)
        for vm in sorted(table.snapshot(), key=lambda vm: vm.job_id)
    ]


async def _handle_queued(
    event: WorkflowJobEvent, dispatcher: JobDispatcher, github: GitHubClient
) -> dict[str, bool]:
    settings = get_settings()
    job = event.workflow_job
    logger.info("Workflow job queued: %s | labels: %s", job.id, ", ".join(job.labels))
    if not should_handle(job.labels, settings.supported_images):
        metrics.inc("jobs_ignored_total")
        return {"handled": False}

    try:
        installation_id = require_installation(event)
    except MissingInstallation as exc:
        logger.error("%s", exc)
        return {"handled": False}

    owner, repo = event.repository.full_name.split("/", 1)
    logger.info(
        "Fetching registration token for job: %s | installation: %s",
        job.id,
        installation_id,
    )
    try:
        token = await github.get_runner_token(owner, repo)
    except RequestFailure as exc:
        logger.error("Unable to get registration token for %s: %s", job.id, exc)
        return {"handled": False}
    if not token:
        logger.error("Unable to get registration token for %s", job.id)
        return {"handled": False}

    logger.info("Dispatching VM for %s", job.id)
    dispatcher.job_queued(
        JobQueued(
            id=job.id,
            labels=job.labels,
            clone_url=event.repository.html_url,
            installation_token=token,
        )
    )
    return {"handled": True}


@router.post(WEBHOOK_PATH, status_code=202)
async def webhook(
    request: Request,
    x_github_event: str | None = Header(default=None),
    x_hub_signature_256: str | None = Header(default=None),
    dispatcher: JobDispatcher = Depends(get_dispatcher),
    github: GitHubClient = Depends(get_github),
) -> dict[str, bool]:
    settings = get_settings()
    body = await request.body()
    if settings.github_webhook_secret:
        if not verify_signature(settings.github_webhook_secret, body, x_hub_signature_256):
            raise HTTPException(status_code=401, detail="invalid signature")
    else:
        logger.warning("no webhook secret configured, skipping signature verification")

    if x_github_event != "workflow_job":
        return {"handled": False}

    try:
        event = WorkflowJobEvent.model_validate_json(body)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors()) from exc

    if event.action == "queued":
        return await _handle_queued(event, dispatcher, github)

    if event.action == "completed":
        job = event.workflow_job
        logger.info("Workflow job completed: %s | %s", job.id, job.conclusion)
        if job.conclusion == "cancelled":
            dispatcher.job_cancelled(JobCancelled(id=job.id))
            return {"handled": True}
    return {"handled": False}
