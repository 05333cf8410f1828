from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .models import Account, utcnow
from .schemas import AccountCreate, AccountRead, AccountUpdate
from .services.approval_gate import committed_today

router = APIRouter(prefix="/api/accounts", tags=["accounts"])


SessionDep = Annotated[AsyncSession, Depends(get_session)]


async def _get_account_or_404(session: AsyncSession, account_id: int) -> Account:
    account = await session.get(Account, account_id)
    if not account:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
    return account


@router.get("", response_model=list[AccountRead])
async def list_accounts(
    session: SessionDep,
    platform: str | None = Query(default=None),
    q: str | None = Query(default=None),
) -> list[Account]:
    stmt = select(Account)
    if platform:
        stmt = stmt.where(Account.platform == platform.lower())
    if q:
        stmt = stmt.where(func.lower(Account.username).like(f"%{q.lower()}%"))
    result = await session.execute(stmt.order_by(Account.created_at.desc(), Account.id.desc()))
    return list(result.scalars().all())


@router.post("", response_model=AccountRead, status_code=status.HTTP_201_CREATED)
async def create_account(payload: AccountCreate, session: SessionDep) -> Account:
    account = Account(**payload.model_dump())
    session.add(account)
    await session.commit()
    await session.refresh(account)
    return account


@router.get("/{account_id}", response_model=AccountRead)
async def get_account(account_id: int, session: SessionDep) -> Account:
    return await _get_account_or_404(session, account_id)


@router.patch("/{account_id}", response_model=AccountRead)
async def update_account(account_id: int, payload: AccountUpdate, session: SessionDep) -> Account:
    account = await _get_account_or_404(session, account_id)
    for field, value in payload.model_dump(exclude_unset=True).items():
        setattr(account, field, value)
    session.add(account)
    await session.commit()
    await session.refresh(account)
    return account


@router.delete("/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_account(account_id: int, session: SessionDep) -> Response:
    account = await _get_account_or_404(session, account_id)
    await session.delete(account)
    await session.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{account_id}/budget")
async def get_account_budget(account_id: int, session: SessionDep) -> dict:
    """Today's committed spend and posts against the account's limits (UTC day)."""
    account = await _get_account_or_404(session, account_id)
    spent, posts = await committed_today(session, account.id, utcnow())
    remaining = None
    if account.daily_spend_limit is not None:
        remaining = max(account.daily_spend_limit - spent, 0)
    return {
        "account_id": account.id,
        "is_autonomous": account.is_autonomous,
        "spent_today": str(spent),
        "daily_spend_limit": str(account.daily_spend_limit) if account.daily_spend_limit is not None else None,
        "remaining_today": str(remaining) if remaining is not None else None,
        "posts_today": posts,
        "daily_post_limit": account.daily_post_limit,
    }
