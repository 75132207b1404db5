import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from harvest.clients.orchard import OrchardClient
from harvest.metrics import metrics
from harvest.process import CommandFailed
from harvest.services.images import resolve_image
from harvest.state_machine import VMState, can_transition


logger = logging.getLogger(__name__)

RUNNER_GROUP = "default"
RUNNER_WORK_DIR = "_work"


def vm_name_for(image: str, job_id: int) -> str:
    return f"{image}-{job_id}"


def build_runner_command(
    *, clone_url: str, token: str, image: str, vm_name: str
) -> str:
    return (
        f"./actions-runner/config.sh --url {clone_url} --token {token}"
        f" --labels {image} --runnergroup {RUNNER_GROUP} --name {vm_name}"
        f" --work {RUNNER_WORK_DIR} --ephemeral --disableupdate"
        " && ./actions-runner/run.sh"
    )


@dataclass
class VMInstance:
    job_id: int
    name: str
    image: str
    state: str = VMState.CREATING.value
    created: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def transition(self, target: VMState) -> None:
        if not can_transition(self.state, target.value):
            logger.warning(
                "unexpected vm transition job_id=%s vm=%s %s->%s",
                self.job_id,
                self.name,
                self.state,
                target.value,
            )
        self.state = target.value


class JobVMTable:
    """Job id -> VMInstance map.

    A job id is present iff ``create vm`` was issued for it and ``delete vm``
    was not. Insert and remove are serialized, so exactly one caller can
    remove a given entry.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._vms: dict[int, VMInstance] = {}

    async def insert(self, vm: VMInstance) -> bool:
        async with self._lock:
            if vm.job_id in self._vms:
                return False
            self._vms[vm.job_id] = vm
            return True

    async def pop(self, job_id: int) -> VMInstance | None:
        async with self._lock:
            return self._vms.pop(job_id, None)

    def get(self, job_id: int) -> VMInstance | None:
        return self._vms.get(job_id)

    def snapshot(self) -> list[VMInstance]:
        return list(self._vms.values())

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._vms

    def __len__(self) -> int:
        return len(self._vms)


class VMManager:
    def __init__(
        self,
        orchard: OrchardClient,
        table: JobVMTable,
        supported_images: Sequence[str],
    ):
        self.orchard = orchard
        self.table = table
        self.supported_images = list(supported_images)

    async def start_job(
        self, job_id: int, labels: Sequence[str], token: str, clone_url: str
    ) -> None:
        image = resolve_image(labels, self.supported_images)
        vm = VMInstance(job_id=job_id, name=vm_name_for(image, job_id), image=image)
        if not await self.table.insert(vm):
            logger.warning("vm already tracked for job_id=%s, ignoring", job_id)
            return

        logger.info("Creating VM %s from image %s for job %s", vm.name, image, job_id)
        try:
            await self.orchard.create_vm(image, vm.name)
        except CommandFailed:
            metrics.inc("vm_create_failures_total")
            # The entry stays so a later cancellation can still delete the VM.
            raise
        finally:
            vm.created.set()
        metrics.inc("vms_created_total")

        if self.table.get(job_id) is not vm:
            logger.info("job %s was cancelled while VM %s was created", job_id, vm.name)
            return

        try:
            vm.transition(VMState.RUNNING)
            command = build_runner_command(
                clone_url=clone_url, token=token, image=image, vm_name=vm.name
            )
            logger.info("Executing runner for job %s", job_id)
            runner = await self.orchard.ssh_vm(vm.name, command, secrets=(token,))
            await runner.exited
            logger.info("Runner finished for job %s", job_id)
        finally:
            await self.delete_if_present(job_id)

    async def delete_if_present(self, job_id: int) -> bool:
        vm = await self.table.pop(job_id)
        if vm is None:
            return False
        vm.transition(VMState.DELETING)
        # Never delete ahead of the create command.
        await vm.created.wait()

        logger.info("Deleting VM %s for job %s", vm.name, job_id)
        try:
            await self.orchard.delete_vm(vm.name)
        except CommandFailed as exc:
            metrics.inc("vm_delete_failures_total")
            logger.error(
                "failed deleting vm job_id=%s vm=%s, manual cleanup required: %s",
                job_id,
                vm.name,
                exc,
            )
            raise
        metrics.inc("vms_deleted_total")
        return True
