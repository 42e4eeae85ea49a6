from fastapi import APIRouter

from relayer.api import diagnostics, relayer

api_router = APIRouter()

api_router.include_router(relayer.router, tags=["relayer"])
api_router.include_router(diagnostics.router, tags=["diagnostics"])
