"""Cart API router."""
from fastapi import APIRouter, Depends, Path

from auth import Principal, get_current_principal
from dependencies import get_cart_service
from schemas import AddCartItemRequest, CartResponse, UpdateCartItemRequest
from services.cart_service import CartService

router = APIRouter(prefix="/cart", tags=["cart"])


# Cart handlers are plain functions: FastAPI runs them in its threadpool


@router.get("", response_model=CartResponse)
def get_cart(
    principal: Principal = Depends(get_current_principal),
    cart_service: CartService = Depends(get_cart_service)
):
    """Get caller's cart - requires authentication."""
    return CartResponse(data={"cart": cart_service.get_cart(principal.user_id)})


@router.post("/items", response_model=CartResponse)
def add_to_cart(
    request: AddCartItemRequest,
    principal: Principal = Depends(get_current_principal),
    cart_service: CartService = Depends(get_cart_service)
):
    """Add item to cart - requires authentication."""
    cart = cart_service.add_item(principal.user_id, request.product_id, request.quantity)
    return CartResponse(message="Item added to cart", data={"cart": cart})


@router.put("/items/{product_id}", response_model=CartResponse)
def update_cart_item(
    request: UpdateCartItemRequest,
    product_id: int = Path(..., description="Product ID"),
    principal: Principal = Depends(get_current_principal),
    cart_service: CartService = Depends(get_cart_service)
):
    """Change the quantity of a cart item - requires authentication."""
    cart = cart_service.update_item(principal.user_id, product_id, request.quantity)
    return CartResponse(message="Cart item updated", data={"cart": cart})


@router.delete("/items/{product_id}", response_model=CartResponse)
def remove_cart_item(
    product_id: int = Path(..., description="Product ID"),
    principal: Principal = Depends(get_current_principal),
    cart_service: CartService = Depends(get_cart_service)
):
    """Remove an item from the cart - requires authentication."""
    cart = cart_service.remove_item(principal.user_id, product_id)
    return CartResponse(message="Item removed from cart", data={"cart": cart})


@router.delete("", response_model=CartResponse)
def clear_cart(
    principal: Principal = Depends(get_current_principal),
    cart_service: CartService = Depends(get_cart_service)
):
    """Empty the cart - requires authentication."""
    cart = cart_service.clear(principal.user_id)
    return CartResponse(message="Cart cleared", data={"cart": cart})
