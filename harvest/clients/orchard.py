from dataclasses import dataclass

from harvest.process import BackgroundProcess, run_in_background, run_to_completion


BOOTSTRAP_SERVICE_ACCOUNT = "bootstrap-admin"
DEFAULT_CONTEXT_MARKER = "*"


@dataclass
class ContextState:
    exists: bool
    is_default: bool


def parse_context_state(context_list: str, name: str) -> ContextState:
    for line in context_list.splitlines():
        if name in line:
            return ContextState(exists=True, is_default=DEFAULT_CONTEXT_MARKER in line)
    return ContextState(exists=False, is_default=False)


def has_default_context_for(context_list: str, url: str) -> bool:
    # First line of `orchard context list` is the table header.
    rows = context_list.splitlines()[1:]
    return sum(1 for row in rows if url in row and DEFAULT_CONTEXT_MARKER in row) == 1


class OrchardClient:
    """Async wrapper around the ``orchard`` CLI."""

    def __init__(self, binary: str = "orchard"):
        self.binary = binary

    async def version(self) -> str:
        return await run_to_completion(self.binary, ["--version"])

    async def create_vm(self, image: str, name: str) -> None:
        await run_to_completion(self.binary, ["create", "vm", "--image", image, name])

    async def delete_vm(self, name: str) -> None:
        await run_to_completion(self.binary, ["delete", "vm", name])

    async def list_vms(self) -> str:
        return await run_to_completion(self.binary, ["list", "vms"])

    async def ssh_vm(
        self, name: str, script: str, secrets: tuple[str, ...] = ()
    ) -> BackgroundProcess:
        return await run_in_background(
            self.binary,
            ["ssh", "vm", name, script],
            log_prefix=f"vm:{name}",
            secrets=secrets,
        )

    async def run_controller(
        self,
        *,
        bootstrap_token: str,
        home: str | None,
        data_dir: str | None = None,
        cert_path: str | None = None,
        cert_key_path: str | None = None,
    ) -> BackgroundProcess:
        args = ["controller", "run"]
        if data_dir:
            args.extend(["--data-dir", data_dir])
        if cert_path and cert_key_path:
            args.extend(["--controller-cert", cert_path, "--controller-key", cert_key_path])
        env = {
            "ORCHARD_BOOTSTRAP_ADMIN_TOKEN": bootstrap_token,
            "GIN_MODE": "release",
        }
        if home:
            env["HOME"] = home
        return await run_in_background(
            self.binary,
            args,
            env=env,
            log_prefix="orchard-controller",
            secrets=(bootstrap_token,),
            failure_is_fatal=True,
        )

    async def list_contexts(self) -> str:
        return await run_to_completion(self.binary, ["context", "list"])

    async def create_context(
        self, *, name: str, url: str, token: str, trust_certificate: bool
    ) -> None:
        await run_to_completion(
            self.binary,
            [
                "context",
                "create",
                "--name",
                name,
                "--service-account-name",
                BOOTSTRAP_SERVICE_ACCOUNT,
                "--service-account-token",
                token,
                url,
            ],
            # Answers the CLI's interactive certificate-trust prompt.
            stdin="yes\n" if trust_certificate else None,
            secrets=(token,),
        )

    async def set_default_context(self, name: str) -> None:
        await run_to_completion(self.binary, ["context", "default", name])

    async def get_bootstrap_token(self) -> str:
        output = await run_to_completion(
            self.binary,
            ["get", "bootstrap-token", BOOTSTRAP_SERVICE_ACCOUNT],
            log_prefix="orchard",
        )
        return output.strip()

    async def run_worker(self, url: str, bootstrap_token: str) -> BackgroundProcess:
        return await run_in_background(
            self.binary,
            ["worker", "run", url, "--bootstrap-token", bootstrap_token],
            log_prefix="orchard-worker",
            secrets=(bootstrap_token,),
            failure_is_fatal=True,
        )
