from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from botmux.models.interaction import PlatformAccount
from botmux.models.user import PlatformAccountLink, UnifiedUser


async def get_user_by_account(
    session: AsyncSession,
    platform: str,
    account_id: str,
) -> UnifiedUser | None:
    stmt = (
        select(UnifiedUser)
        .join(PlatformAccountLink)
        .where(
            PlatformAccountLink.platform == platform,
            PlatformAccountLink.account_id == account_id,
        )
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def reconcile_account(
    session: AsyncSession,
    account: PlatformAccount,
) -> tuple[UnifiedUser, bool]:
    """Find the UnifiedUser owning ``account``, creating one if unseen.

    Returns ``(user, changed)``; ``changed`` is True when the cached name or
    handle differed from what the platform reports now (the link is updated).
    """
    stmt = select(PlatformAccountLink).where(
        PlatformAccountLink.platform == account.platform,
        PlatformAccountLink.account_id == account.account_id,
    )
    result = await session.execute(stmt)
    link = result.scalar_one_or_none()

    if link is None:
        user = UnifiedUser()
        user.accounts.append(
            PlatformAccountLink(
                platform=account.platform,
                account_id=account.account_id,
                name=account.name,
                handle=account.handle,
                is_primary=True,
            )
        )
        session.add(user)
        await session.commit()
        return user, False

    changed = link.name != account.name or link.handle != account.handle
    if changed:
        link.name = account.name
        link.handle = account.handle
        await session.commit()

    user = await session.get(UnifiedUser, link.user_id)
    return user, changed


async def link_account(
    session: AsyncSession,
    user_id: int,
    account: PlatformAccount,
) -> PlatformAccountLink:
    """Attach an additional platform account to an existing user."""
    link = PlatformAccountLink(
        user_id=user_id,
        platform=account.platform,
        account_id=account.account_id,
        name=account.name,
        handle=account.handle,
        is_primary=False,
    )
    session.add(link)
    await session.commit()
    return link


async def list_users(session: AsyncSession) -> list[UnifiedUser]:
    result = await session.execute(select(UnifiedUser).order_by(UnifiedUser.id))
    return list(result.scalars().all())
