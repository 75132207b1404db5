"""Bring-up and teardown of the Orchard control plane.

Either this process runs the Orchard controller (and optionally a worker)
itself, or it validates that the default Orchard context already points at
the configured controller. Startup problems here are fatal: without a
working context every VM operation would fail later.
"""

import asyncio
import hashlib
import logging
from collections.abc import Awaitable, Callable

import httpx

from harvest.clients.orchard import (
    OrchardClient,
    has_default_context_for,
    parse_context_state,
)
from harvest.config import Settings
from harvest.process import BackgroundProcess, fatal, success_or_fatal


logger = logging.getLogger(__name__)

Teardown = Callable[[], Awaitable[None]]


class ContextInvalid(RuntimeError):
    pass


class ControllerUnreachable(RuntimeError):
    def __init__(self, *, url: str, attempts: int, detail: str):
        self.url = url
        self.attempts = attempts
        self.detail = detail
        super().__init__(
            f"orchard controller at {url} unreachable after {attempts} attempts: {detail}"
        )


def context_name(bootstrap_token: str, url: str) -> str:
    return hashlib.md5(f"{bootstrap_token}|{url}".encode("utf-8")).hexdigest()


async def wait_for_controller(
    url: str,
    *,
    attempts: int,
    interval_sec: float,
    transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    # Any HTTP response means the listener is up. The certificate may be self-signed.
    detail = "no attempt made"
    async with httpx.AsyncClient(verify=False, timeout=5.0, transport=transport) as client:
        for attempt in range(1, attempts + 1):
            try:
                await client.get(url)
                logger.info("orchard controller reachable url=%s attempt=%s", url, attempt)
                return
            except httpx.TransportError as exc:
                detail = f"{exc.__class__.__name__}: {exc}"
                logger.debug("controller not ready url=%s attempt=%s: %s", url, attempt, detail)
            if attempt < attempts:
                await asyncio.sleep(interval_sec)
    raise ControllerUnreachable(url=url, attempts=attempts, detail=detail)


async def ensure_default_context(orchard: OrchardClient, settings: Settings) -> str:
    token = settings.orchard_bootstrap_admin_token or ""
    name = context_name(token, settings.orchard_url)
    state = parse_context_state(
        await success_or_fatal(orchard.list_contexts(), "Could not list Orchard contexts"),
        name,
    )
    if not state.exists:
        logger.info("Creating Orchard context with name %s ...", name)
        await success_or_fatal(
            orchard.create_context(
                name=name,
                url=settings.orchard_url,
                token=token,
                trust_certificate=settings.auto_trust_cert,
            ),
            f"Could not create Orchard context named {name}",
        )
    if not state.is_default:
        logger.info("Setting default Orchard context...")
        await success_or_fatal(
            orchard.set_default_context(name),
            f"Could not set default Orchard context named {name}",
        )
    return name


def require_default_context(contexts: str, url: str) -> None:
    if not has_default_context_for(contexts, url):
        raise ContextInvalid(
            f"Orchard context for {url} does not exist or is not selected as the default."
        )


async def validate_external_context(orchard: OrchardClient, settings: Settings) -> None:
    logger.info("Validating Orchard context...")
    contexts = await success_or_fatal(
        orchard.list_contexts(), "Could not list Orchard contexts"
    )
    try:
        require_default_context(contexts, settings.orchard_url)
    except ContextInvalid as exc:
        fatal(str(exc))
    await success_or_fatal(
        orchard.list_vms(),
        "Could not successfully execute an Orchard command. "
        "Make sure the default Orchard context is configured correctly.",
    )


async def configure_orchard(
    orchard: OrchardClient,
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Teardown:
    logger.info("Checking for Orchard...")
    version = await success_or_fatal(
        orchard.version(), f"Could not run {orchard.binary} --version"
    )
    logger.info("found %s", version.strip())

    started: list[tuple[str, BackgroundProcess]] = []

    if settings.run_orchard_controller:
        logger.info("Running Orchard controller...")
        controller = await success_or_fatal(
            orchard.run_controller(
                bootstrap_token=settings.orchard_bootstrap_admin_token or "",
                home=settings.orchard_data_dir,
                data_dir=settings.orchard_data_dir,
                cert_path=settings.orchard_cert_path,
                cert_key_path=settings.orchard_cert_key_path,
            ),
            "Could not start the Orchard controller",
        )
        started.append(("controller", controller))

        await asyncio.sleep(settings.controller_boot_grace_sec)
        await success_or_fatal(
            wait_for_controller(
                settings.orchard_url,
                attempts=settings.controller_ready_attempts,
                interval_sec=settings.controller_ready_interval_sec,
                transport=transport,
            ),
            "Orchard controller did not become reachable",
        )
        await ensure_default_context(orchard, settings)

        if settings.run_orchard_worker:
            logger.info("Fetching bootstrap-token...")
            worker_token = await success_or_fatal(
                orchard.get_bootstrap_token(), "Could not fetch an Orchard bootstrap token"
            )
            logger.info("Starting Orchard worker...")
            worker = await success_or_fatal(
                orchard.run_worker(settings.orchard_url, worker_token),
                "Could not start the Orchard worker",
            )
            started.append(("worker", worker))
    else:
        await validate_external_context(orchard, settings)

    logger.info("orchard control plane ready")
    torn_down = False

    async def teardown() -> None:
        nonlocal torn_down
        if torn_down:
            return
        torn_down = True
        for label, process in reversed(started):
            logger.info("Stopping Orchard %s...", label)
            await process.kill()
            logger.info("Orchard %s stopped.", label)

    return teardown
