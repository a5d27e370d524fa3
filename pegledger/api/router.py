from fastapi import APIRouter, Depends

from pegledger.api import deps
from pegledger.api.v1 import admin, liquid

api_router = APIRouter()

_http_deps = [Depends(deps.rate_limit)]

api_router.include_router(liquid.router, tags=["Liquid"], dependencies=_http_deps)
api_router.include_router(admin.router, tags=["Admin"], dependencies=_http_deps)
