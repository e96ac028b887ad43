from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

import sqlalchemy as sa
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .db import SessionLocal, engine
from .models import Base, Pipeline, PipelineJob

TERMINAL = ("succeeded", "failed", "cancelled", "skipped")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Creates tables if they don't exist.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield


app = FastAPI(title="stageflow pipeline service", lifespan=lifespan)

# -------------------- Schemas --------------------

class ArtifactKeyModel(BaseModel):
    project: str = ""
    job: str
    ref: str
    sha: str


class JobReport(BaseModel):
    name: str
    stage: str = ""
    state: str
    attempts: int = 0
    failure: str | None = None
    exit_code: int | None = None
    skip_reason: str | None = None
    allow_failure: bool = False
    artifact: ArtifactKeyModel | None = None
    preemptions: int = 0


class PipelineReport(BaseModel):
    id: str
    project: str = ""
    ref: str
    sha: str = ""
    source: str = "push"
    status: str
    cancel_reason: str | None = None
    created_at: str | None = None
    started_at: str | None = None
    finished_at: str | None = None
    jobs: list[JobReport] = Field(default_factory=list)


class PublishResponse(BaseModel):
    id: str
    jobs: int


class ExternalJobResponse(BaseModel):
    status: str
    artifacts_available: bool
    artifact_keys: list[ArtifactKeyModel]
    pipeline_id: str | None


# -------------------- Endpoints --------------------

@app.post("/pipelines", response_model=PublishResponse, status_code=201)
async def publish_pipeline(report: PipelineReport):
    if report.status not in TERMINAL:
        raise HTTPException(status_code=400, detail=f"status must be one of {'|'.join(TERMINAL)}")

    async with SessionLocal() as s:
        async with s.begin():
            if await s.get(Pipeline, report.id) is not None:
                raise HTTPException(status_code=409, detail=f"Pipeline {report.id} already published")

            s.add(Pipeline(
                id=report.id,
                project=report.project,
                ref=report.ref,
                sha=report.sha,
                status=report.status,
                report=report.model_dump(),
            ))
            await s.flush()

            for j in report.jobs:
                s.add(PipelineJob(
                    pipeline_id=report.id,
                    project=report.project,
                    ref=report.ref,
                    job_name=j.name,
                    state=j.state,
                    artifact=j.artifact.model_dump() if j.artifact else None,
                ))

    return PublishResponse(id=report.id, jobs=len(report.jobs))


@app.get("/pipelines/{pipeline_id}", response_model=PipelineReport)
async def get_pipeline(pipeline_id: str):
    async with SessionLocal() as s:
        row = await s.get(Pipeline, pipeline_id)
        if not row:
            raise HTTPException(status_code=404, detail="Pipeline not found")
        return PipelineReport(**row.report)


@app.get("/projects/{project:path}/refs/{ref:path}/jobs/{job}", response_model=ExternalJobResponse)
async def poll_external_job(project: str, ref: str, job: str):
    """Latest published result of `job` on `project`@`ref`."""
    q = (
        sa.select(PipelineJob)
        .where(PipelineJob.project == project, PipelineJob.ref == ref, PipelineJob.job_name == job)
        .order_by(PipelineJob.id.desc())
        .limit(1)
    )
    async with SessionLocal() as s:
        row = (await s.execute(q)).scalar_one_or_none()
        if not row:
            raise HTTPException(status_code=404, detail="No published run of that job")

        keys: list[dict[str, Any]] = [row.artifact] if row.artifact else []
        return ExternalJobResponse(
            status=row.state,
            artifacts_available=bool(keys),
            artifact_keys=[ArtifactKeyModel(**k) for k in keys],
            pipeline_id=row.pipeline_id,
        )
