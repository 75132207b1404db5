import logging

from fastapi import FastAPI
from pydantic import ValidationError

from harvest.api import router
from harvest.clients.github import GitHubClient
from harvest.clients.http import RetryPolicy
from harvest.clients.orchard import OrchardClient
from harvest.config import ConfigurationInvalid, get_settings
from harvest.logging_config import configure_logging
from harvest.process import fatal
from harvest.services.bootstrap import configure_orchard
from harvest.services.dispatch import JobDispatcher
from harvest.services.provisioning import JobVMTable, VMManager


logger = logging.getLogger(__name__)


app = FastAPI(title="Harvest")
app.include_router(router)


@app.on_event("startup")
async def startup() -> None:
    configure_logging()
    try:
        settings = get_settings()
    except (ConfigurationInvalid, ValidationError) as exc:
        fatal(f"invalid configuration: {exc}")
    configure_logging(settings.verbose)

    orchard = OrchardClient(settings.orchard_binary)
    app.state.teardown = None
    if not settings.skip_orchard_bootstrap:
        app.state.teardown = await configure_orchard(orchard, settings)

    table = JobVMTable()
    app.state.table = table
    app.state.dispatcher = JobDispatcher(
        VMManager(orchard, table, settings.supported_images)
    )
    app.state.github = GitHubClient(
        base_url=settings.api_base_url,
        token=settings.github_token,
        retry=RetryPolicy(settings.retry_attempts, settings.retry_sleep_sec),
    )
    logger.info(
        "harvest startup complete orchard_url=%s supported_images=%s",
        settings.orchard_url,
        ",".join(settings.supported_images),
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    dispatcher = getattr(app.state, "dispatcher", None)
    if dispatcher is not None:
        if not await dispatcher.drain(get_settings().shutdown_drain_sec):
            logger.warning(
                "shutting down with %s job tasks still running", dispatcher.pending
            )
    github = getattr(app.state, "github", None)
    if github is not None:
        await github.aclose()
    teardown = getattr(app.state, "teardown", None)
    if teardown is not None:
        await teardown()
    logger.info("Goodbye!")
