"""
FastAPI dependencies for the process-lifetime components created in the app lifespan.
"""
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from social_api.flow_store import EphemeralStateStore
from social_api.token_refresh import TokenRefreshManager
from social_api.token_store import AccountTokenStore
from social_api.x_client import XOAuthClient


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory


def get_state_store(request: Request) -> EphemeralStateStore:
    return request.app.state.state_store


def get_account_store(request: Request) -> AccountTokenStore:
    return request.app.state.account_store


def get_refresh_manager(request: Request) -> TokenRefreshManager:
    return request.app.state.refresh_manager


def get_oauth_clients(request: Request) -> dict[str, XOAuthClient]:
    return request.app.state.oauth_clients
