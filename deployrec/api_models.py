from __future__ import annotations

from pydantic import BaseModel, Field


class DeployRequest(BaseModel):
    repo_url: str | None = Field(None, description="Deployment repository; defaults to DEPLOYREC_REPO_URL")
    ref: str | None = Field(None, description="Tag or branch to check out")
    image: str | None = Field(None, description="Image reference (name:tag) to run")
    provision: bool = Field(True, description="Install docker / compose when missing")
    auto_rollback: bool | None = Field(None, description="Override DEPLOYREC_AUTO_ROLLBACK")


class RollbackRequest(BaseModel):
    repo_url: str | None = None
    ref: str | None = None


class RunAccepted(BaseModel):
    run_id: str
    state: str
    message: str
