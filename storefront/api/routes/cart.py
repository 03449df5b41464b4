"""
Cart routes

Authenticated users own their cart by user id; guests by the session-id
cookie, which is issued on the first add.
"""
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.api.deps import get_optional_user, get_guest_session_id
from storefront.core.config import settings
from storefront.core.cookies import set_guest_session_cookie
from storefront.core.database import get_db
from storefront.core.exceptions import NotFoundError
from storefront.core.rate_limit import limiter
from storefront.models import Cart, User
from storefront.schemas.cart import CartEnvelope, CartItemAdd, CartItemUpdate, CartResponse
from storefront.services.cart_service import CartOwner, cart_service

router = APIRouter()


def serialize_cart(cart: Optional[Cart]) -> CartResponse:
    if cart is None:
        return CartResponse(currency=settings.STORE_CURRENCY)
    response = CartResponse.model_validate(cart)
    response.item_count = sum(line.quantity for line in cart.items)
    return response


def resolve_owner(
    response: Response,
    user: Optional[User],
    session_id: Optional[str],
    create: bool = False,
) -> Optional[CartOwner]:
    if user is not None:
        return CartOwner(user_id=user.id)
    if session_id:
        return CartOwner(session_id=session_id)
    if not create:
        return None
    session_id = secrets.token_urlsafe(32)
    set_guest_session_cookie(response, session_id)
    return CartOwner(session_id=session_id)


@router.get("", response_model=CartEnvelope)
async def get_cart(
    request: Request,
    response: Response,
    user: Optional[User] = Depends(get_optional_user),
    session_id: Optional[str] = Depends(get_guest_session_id),
    db: AsyncSession = Depends(get_db),
):
    owner = resolve_owner(response, user, session_id)
    cart = await cart_service.get_cart(db, owner) if owner else None
    return CartEnvelope(cart=serialize_cart(cart))


@router.post("", response_model=CartEnvelope)
@limiter.limit(settings.RATE_LIMIT_CART)
async def add_to_cart(
    request: Request,
    response: Response,
    item: CartItemAdd,
    user: Optional[User] = Depends(get_optional_user),
    session_id: Optional[str] = Depends(get_guest_session_id),
    db: AsyncSession = Depends(get_db),
):
    owner = resolve_owner(response, user, session_id, create=True)
    cart = await cart_service.add_item(db, owner, item.product_id, item.quantity)
    return CartEnvelope(message="Item added to cart", cart=serialize_cart(cart))


@router.patch("/{product_id}", response_model=CartEnvelope)
@limiter.limit(settings.RATE_LIMIT_CART)
async def update_cart_item(
    request: Request,
    response: Response,
    product_id: int,
    item: CartItemUpdate,
    user: Optional[User] = Depends(get_optional_user),
    session_id: Optional[str] = Depends(get_guest_session_id),
    db: AsyncSession = Depends(get_db),
):
    owner = resolve_owner(response, user, session_id)
    if owner is None:
        raise NotFoundError("Cart not found")
    cart = await cart_service.update_item(db, owner, product_id, item.quantity)
    message = "Item removed from cart" if item.quantity == 0 else "Cart updated"
    return CartEnvelope(message=message, cart=serialize_cart(cart))


@router.delete("/{product_id}", response_model=CartEnvelope)
@limiter.limit(settings.RATE_LIMIT_CART)
async def remove_cart_item(
    request: Request,
    response: Response,
    product_id: int,
    user: Optional[User] = Depends(get_optional_user),
    session_id: Optional[str] = Depends(get_guest_session_id),
    db: AsyncSession = Depends(get_db),
):
    owner = resolve_owner(response, user, session_id)
    if owner is None:
        raise NotFoundError("Cart not found")
    cart = await cart_service.remove_item(db, owner, product_id)
    return CartEnvelope(message="Item removed from cart", cart=serialize_cart(cart))


@router.delete("", response_model=CartEnvelope)
async def clear_cart(
    request: Request,
    response: Response,
    user: Optional[User] = Depends(get_optional_user),
    session_id: Optional[str] = Depends(get_guest_session_id),
    db: AsyncSession = Depends(get_db),
):
    owner = resolve_owner(response, user, session_id)
    if owner is not None:
        await cart_service.clear_cart(db, owner)
    return CartEnvelope(message="Cart cleared")
