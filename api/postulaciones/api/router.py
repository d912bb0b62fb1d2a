from fastapi import APIRouter

from postulaciones.api.routes import health, postulaciones

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(postulaciones.router, prefix="/postulaciones", tags=["postulaciones"])
