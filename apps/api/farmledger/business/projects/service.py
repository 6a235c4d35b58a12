from __future__ import annotations

import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from farmledger.business.projects.models import Party, Project
from farmledger.business.projects.schemas import PartyCreate, PartyRead, ProjectCreate, ProjectRead
from farmledger.platform.context import ActorContext
from farmledger.platform.ledger.errors import NotFoundError, TenantMismatchError, ValidationError
from farmledger.platform.ledger.models import CropCycle
from farmledger.platform.ledger.repository import TenantScopedRepository


class PartyRepository(TenantScopedRepository):
    model = Party


class ProjectRepository(TenantScopedRepository):
    model = Project


@dataclass(slots=True, eq=False)
class ProjectService:
    party_repository: PartyRepository = PartyRepository()
    project_repository: ProjectRepository = ProjectRepository()

    def create_party(self, session: Session, ctx: ActorContext, dto: PartyCreate) -> PartyRead:
        self.party_repository.validate_write_scope(dto.tenant_id, ctx)
        party = Party(id=uuid.uuid4(), **dto.model_dump(mode="python"))
        session.add(party)
        session.commit()
        session.refresh(party)
        return PartyRead.model_validate(party)

    def get_party(self, session: Session, ctx: ActorContext, party_id: uuid.UUID) -> Party:
        party = self.party_repository.get(session, ctx, party_id)
        if party is None:
            raise NotFoundError(f"party {party_id} not found")
        return party

    def list_parties(self, session: Session, ctx: ActorContext, *, tenant_id: str) -> list[PartyRead]:
        ctx.require_tenant(tenant_id)
        rows = session.scalars(select(Party).where(Party.tenant_id == tenant_id).order_by(Party.name.asc())).all()
        return [PartyRead.model_validate(row) for row in rows]

    def create_project(self, session: Session, ctx: ActorContext, dto: ProjectCreate) -> ProjectRead:
        self.project_repository.validate_write_scope(dto.tenant_id, ctx)
        cycle = session.get(CropCycle, dto.crop_cycle_id)
        if cycle is None:
            raise NotFoundError(f"crop cycle {dto.crop_cycle_id} not found")
        if cycle.tenant_id != dto.tenant_id:
            raise TenantMismatchError("project crop cycle belongs to another tenant")
        if dto.hari_party_id is not None:
            hari = session.get(Party, dto.hari_party_id)
            if hari is None:
                raise NotFoundError(f"party {dto.hari_party_id} not found")
            if hari.tenant_id != dto.tenant_id:
                raise TenantMismatchError("project hari belongs to another tenant")
            if hari.party_type != "HARI":
                raise ValidationError("project hari_party_id must reference a HARI party")

        project = Project(id=uuid.uuid4(), status="ACTIVE", **dto.model_dump(mode="python"))
        session.add(project)
        session.commit()
        session.refresh(project)
        return ProjectRead.model_validate(project)

    def get_project(self, session: Session, ctx: ActorContext, project_id: uuid.UUID) -> Project:
        project = self.project_repository.get(session, ctx, project_id)
        if project is None:
            raise NotFoundError(f"project {project_id} not found")
        return project

    def list_projects(
        self,
        session: Session,
        ctx: ActorContext,
        *,
        tenant_id: str,
        crop_cycle_id: uuid.UUID | None = None,
    ) -> list[ProjectRead]:
        ctx.require_tenant(tenant_id)
        stmt = select(Project).where(Project.tenant_id == tenant_id)
        if crop_cycle_id is not None:
            stmt = stmt.where(Project.crop_cycle_id == crop_cycle_id)
        rows = session.scalars(stmt.order_by(Project.name.asc())).all()
        return [ProjectRead.model_validate(row) for row in rows]


project_service = ProjectService()
