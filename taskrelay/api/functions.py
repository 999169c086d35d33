"""Read-only view of the function catalog."""
from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, status

from taskrelay.functions.registry import FunctionRegistry
from taskrelay.runtime import get_registry

router = APIRouter(prefix="/api/functions", tags=["functions"])


@router.get("")
async def list_functions(registry: FunctionRegistry = Depends(get_registry)) -> Dict[str, List[Dict[str, Any]]]:
    return {"functions": registry.export_definitions()}


@router.get("/{name}")
async def get_function(name: str, registry: FunctionRegistry = Depends(get_registry)) -> Dict[str, Any]:
    func = registry.lookup(name)
    if func is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Function {name} not found")
    return func.definition.to_dict()
