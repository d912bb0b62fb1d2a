from fastapi import APIRouter, Depends, HTTPException, status

from postulaciones.services.repository import RepositoryError, get_repository

router = APIRouter()


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(repository=Depends(get_repository)) -> dict[str, str | int | None]:
    try:
        schema_version = await repository.get_schema_version()
    except RepositoryError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return {"status": "ok", "schema_version": schema_version}
