"""
Catalog API routes.
"""
from typing import List
from fastapi import APIRouter, Depends

from rbac_admin.features.catalog.catalog import StaticCatalog, get_catalog
from rbac_admin.features.catalog.schemas import ActionResponse, ResourceResponse


router = APIRouter()


@router.get("/resources", response_model=List[ResourceResponse])
async def list_resources(catalog: StaticCatalog = Depends(get_catalog)):
    """List protectable resources with their supported actions."""
    return catalog.list_resources()


@router.get("/resources/{name}", response_model=ResourceResponse)
async def get_resource(name: str, catalog: StaticCatalog = Depends(get_catalog)):
    """Get one resource."""
    return catalog.get_resource(name)


@router.get("/actions", response_model=List[ActionResponse])
async def list_actions(catalog: StaticCatalog = Depends(get_catalog)):
    """List all actions."""
    return catalog.list_actions()
