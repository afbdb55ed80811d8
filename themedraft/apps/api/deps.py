from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from themedraft.persistence.resources import AppResources
from themedraft.services.wiring import GenerationServices


def get_resources(request: Request) -> AppResources:
    return request.app.state.resources


def get_services(request: Request) -> GenerationServices:
    return request.app.state.services


async def get_db(resources: AppResources = Depends(get_resources)) -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with resources.session_factory() as session:
        yield session


def get_tenant_id(request: Request, resources: AppResources = Depends(get_resources)) -> str:
    # Tenant identity is asserted upstream; accept the header or the query param.
    header_name = resources.settings.tenant_header
    tenant_id = (request.headers.get(header_name) or request.query_params.get("shop") or "").strip()
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "TENANT_REQUIRED", "message": f"Missing {header_name} header or shop parameter"},
        )
    return tenant_id
