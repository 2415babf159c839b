"""Products API router."""
from fastapi import APIRouter, Depends, Path
from opentelemetry import trace

from database import SessionFactory, transaction
from dependencies import get_session_factory
from errors import NotFoundError
from monitoring import product_views_counter
from schemas import ProductDetailResponse, ProductListResponse, ProductResponse
from services.repositories import ProductRepository

router = APIRouter(prefix="/products", tags=["products"])

products_repository = ProductRepository()


@router.get("", response_model=ProductListResponse)
def get_products(session_factory: SessionFactory = Depends(get_session_factory)):
    """Get all products that have not been removed from the catalogue."""
    with transaction(session_factory) as tx:
        products = products_repository.list_products(tx)

    span = trace.get_current_span()
    span.set_attribute("product.count", len(products))
    product_views_counter.add(1, {"view": "catalog"})

    return ProductListResponse(data={"products": [ProductResponse.from_record(p) for p in products]})


@router.get("/{product_id}", response_model=ProductDetailResponse)
def get_product(
    product_id: int = Path(..., description="Product ID"),
    session_factory: SessionFactory = Depends(get_session_factory)
):
    """Get product details."""
    with transaction(session_factory) as tx:
        product = products_repository.get_product(tx, product_id)

    if product is None or not product.is_available:
        raise NotFoundError("product", product_id)

    span = trace.get_current_span()
    span.set_attribute("product.id", product_id)
    product_views_counter.add(1, {"view": "detail", "category": product.category or "uncategorized"})

    return ProductDetailResponse(data={"product": ProductResponse.from_record(product)})
