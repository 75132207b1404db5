from pydantic import BaseModel, Field


class WorkflowJob(BaseModel):
    id: int
    labels: list[str] = Field(default_factory=list)
    conclusion: str | None = None
    name: str | None = None


class Repository(BaseModel):
    full_name: str
    html_url: str


class Installation(BaseModel):
    id: int


class WorkflowJobEvent(BaseModel):
    action: str
    workflow_job: WorkflowJob
    repository: Repository
    installation: Installation | None = None


class JobQueued(BaseModel):
    id: int
    labels: list[str]
    clone_url: str
    installation_token: str


class JobCancelled(BaseModel):
    id: int


class VMRead(BaseModel):
    job_id: int
    name: str
    image: str
    state: str
