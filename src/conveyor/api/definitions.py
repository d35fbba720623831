"""Definition API endpoints — validate a definition without running it."""

from fastapi import APIRouter, Depends, HTTPException

from conveyor.adapters.registry import AdapterRegistry
from conveyor.api.deps import get_adapters
from conveyor.core.auth import verify_api_key
from conveyor.core.errors import CycleError, LoadError
from conveyor.pipeline.loader import load_definition_text
from conveyor.schemas.definition import DefinitionValidate, DefinitionValidateResponse

router = APIRouter(prefix="/definitions", tags=["definitions"])


@router.post("/validate", response_model=DefinitionValidateResponse)
async def validate_definition(
    data: DefinitionValidate,
    adapters: AdapterRegistry = Depends(get_adapters),
    _: str = Depends(verify_api_key),
):
    """Parse a definition, check its graph and its adapter bindings."""
    try:
        definition = load_definition_text(data.content, data.format)
        adapters.validate(definition)
    except CycleError as e:
        raise HTTPException(400, {"error": str(e), "cycle": e.cycle})
    except LoadError as e:
        raise HTTPException(400, str(e))

    return DefinitionValidateResponse(
        name=definition.name,
        version=definition.version,
        schema_version=definition.schema_version,
        **definition.graph.to_dict(),
    )
