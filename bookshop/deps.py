from collections.abc import Generator
from typing import Annotated

from fastapi import Depends, Request
from sqlmodel import Session

from bookshop.clients.catalog_client import CatalogClient
from bookshop.core.db import Database
from bookshop.core.redis import RedisClient

# Resources are created by the lifespan and kept on app.state


def get_database(request: Request) -> Database:
    return request.app.state.db


def get_db(database: Annotated[Database, Depends(get_database)]) -> Generator[Session, None, None]:
    with database.session() as session:
        yield session


def get_redis(request: Request) -> RedisClient:
    return request.app.state.redis


def get_catalog(request: Request) -> CatalogClient:
    return request.app.state.catalog


SessionDep = Annotated[Session, Depends(get_db)]
RedisDep = Annotated[RedisClient, Depends(get_redis)]
CatalogDep = Annotated[CatalogClient, Depends(get_catalog)]
