from __future__ import annotations

import asyncio
import math
from typing import Any
from urllib.parse import urlencode

from fastapi import FastAPI, Query, Request, status
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from loguru import logger
from pydantic import ValidationError
from starlette.datastructures import FormData
from starlette.middleware.sessions import SessionMiddleware

from app.api.routes import products as products_api
from app.core.config import get_distribution_configuration, get_settings, get_templates_config
from app.core.database import db
from app.core.logging import configure_logging, log_info, log_warning
from app.repositories import distributions as distributions_repo
from app.repositories import products as products_repo
from app.repositories import tags as tags_repo
from app.schemas.products import ProductForm
from app.security.request_logger import RequestLoggingMiddleware, client_ip
from app.services import products as products_service

configure_logging()
settings = get_settings()
templates_config = get_templates_config()

MESSAGES = {
    "product_not_found": "Product not found.",
    "product_created": "Product created.",
    "product_updated": "Product updated.",
    "product_reordered": "Product order updated.",
}

_FLASH_SESSION_KEY = "_flashes"
_PRODUCT_FORM_FIELDS = (
    "code",
    "name",
    "user_label",
    "price",
    "catalog_price",
    "stock",
    "sorting",
)
_PRODUCT_FORM_CHECKBOXES = ("visible", "shop")

app = FastAPI(
    title=settings.app_name,
    description="Product catalog administration: listing, editing, ordering and buyer distributions.",
)
app.add_middleware(RequestLoggingMiddleware, exempt_paths=("/static",))
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.secret_key,
    session_cookie=settings.session_cookie_name,
    same_site="lax",
)
app.include_router(products_api.router)

templates = Jinja2Templates(directory=str(templates_config.template_path))


@app.on_event("startup")
async def on_startup() -> None:
    await db.connect()
    await db.run_migrations()
    log_info("Application started", environment=settings.environment)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await db.disconnect()
    log_info("Application shutdown")


def set_distribution_configuration(key: str, levels: list[float]) -> None:
    """Override the levels of a named distribution (fails when fewer than three)."""

    get_distribution_configuration().set(key, levels)


def _flash(request: Request, message: str, category: str = "info") -> None:
    flashes = request.session.setdefault(_FLASH_SESSION_KEY, [])
    flashes.append({"message": message, "category": category})
    request.session[_FLASH_SESSION_KEY] = flashes


def _pop_flashes(request: Request) -> list[dict[str, str]]:
    return request.session.pop(_FLASH_SESSION_KEY, [])


def _render_template(
    template_name: str,
    request: Request,
    *,
    extra: dict[str, Any] | None = None,
    status_code: int = status.HTTP_200_OK,
):
    context: dict[str, Any] = {
        "app_name": settings.app_name,
        "flashes": _pop_flashes(request),
    }
    if extra:
        context.update(extra)
    return templates.TemplateResponse(request, template_name, context, status_code=status_code)


def _redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url=url, status_code=status.HTTP_303_SEE_OTHER)


def _redirect_missing_product(request: Request, category: str = "info") -> RedirectResponse:
    _flash(request, MESSAGES["product_not_found"], category)
    return _redirect("/admin/products")


def _parse_int_in_range(value: Any, *, default: int, minimum: int, maximum: int) -> int:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError, AttributeError):
        return default
    return max(minimum, min(parsed, maximum))


def _parse_tag_ids(values: list[str]) -> list[int]:
    tag_ids: list[int] = []
    for value in values:
        try:
            tag_ids.append(int(value))
        except (TypeError, ValueError):
            continue
    return tag_ids


def _list_url(text: str | None, tag_ids: list[int]) -> str:
    params: list[tuple[str, Any]] = []
    if text:
        params.append(("text", text))
    params.extend(("tags", tag_id) for tag_id in tag_ids)
    if not params:
        return "/admin/products"
    return f"/admin/products?{urlencode(params)}"


def _product_form_values(form: FormData) -> dict[str, Any]:
    values: dict[str, Any] = {key: form.get(key, "") for key in _PRODUCT_FORM_FIELDS}
    for key in _PRODUCT_FORM_CHECKBOXES:
        values[key] = key in form
    values["tags"] = _parse_tag_ids(form.getlist("tags"))
    return values


def _validation_messages(exc: ValidationError) -> dict[str, str]:
    errors: dict[str, str] = {}
    for error in exc.errors():
        location = error.get("loc") or ("form",)
        errors.setdefault(str(location[0]), error.get("msg", "Invalid value"))
    return errors


async def _render_product_form(
    request: Request,
    *,
    product: dict[str, Any] | None,
    values: dict[str, Any],
    errors: dict[str, str] | None = None,
    status_code: int = status.HTTP_200_OK,
):
    extra = {
        "title": "Edit product" if product else "New product",
        "product": product,
        "values": values,
        "errors": errors or {},
        "tag_choices": await tags_repo.tag_choices(),
    }
    return _render_template(
        "admin/products/form.html", request, extra=extra, status_code=status_code
    )


@app.get("/admin/products", response_class=HTMLResponse)
async def admin_products_page(
    request: Request,
    text: str | None = Query(default=None),
    tags: list[str] = Query(default=[]),
    page: str | None = Query(default=None),
):
    tag_ids = _parse_tag_ids(tags)
    spec = products_repo.search(text, tag_ids)
    page_size = settings.items_per_page

    filtered_count, total_count, tag_choices = await asyncio.gather(
        products_repo.count_products(spec),
        products_repo.count_products(products_repo.search()),
        tags_repo.tag_choices(),
    )
    total_pages = max(1, math.ceil(filtered_count / page_size))
    current_page = _parse_int_in_range(page, default=1, minimum=1, maximum=total_pages)
    products = await products_repo.list_products(
        spec.paginate(page_size, (current_page - 1) * page_size)
    )

    extra = {
        "title": "Products",
        "products": products,
        "text": text or "",
        "selected_tags": tag_ids,
        "tag_choices": tag_choices,
        "all_products_count": total_count,
        "filtered_products_count": filtered_count,
        "page": current_page,
        "total_pages": total_pages,
        "page_query": _list_url(text, tag_ids),
    }
    return _render_template("admin/products/list.html", request, extra=extra)


@app.post("/admin/products/filter")
async def admin_products_filter(request: Request):
    form = await request.form()
    if "cancel" in form:
        return _redirect("/admin/products")
    text = str(form.get("text", "")).strip()
    return _redirect(_list_url(text, _parse_tag_ids(form.getlist("tags"))))


@app.get("/admin/products/new", response_class=HTMLResponse)
async def admin_product_create_page(request: Request):
    return await _render_product_form(request, product=None, values={"tags": []})


@app.post("/admin/products")
async def admin_create_product(request: Request):
    values = _product_form_values(await request.form())
    try:
        product_form = ProductForm.model_validate(values)
        result = await products_service.save_product(product_form, ip_address=client_ip(request))
    except ValidationError as exc:
        return await _render_product_form(
            request,
            product=None,
            values=values,
            errors=_validation_messages(exc),
            status_code=status.HTTP_400_BAD_REQUEST,
        )
    except products_service.ProductValidationError as exc:
        return await _render_product_form(
            request,
            product=None,
            values=values,
            errors=exc.errors,
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    _flash(request, MESSAGES["product_created"], "success")
    return _redirect(f"/admin/products/{result.product['id']}")


@app.get("/admin/products/{product_id}", response_class=HTMLResponse)
async def admin_product_detail_page(request: Request, product_id: int):
    product = await products_repo.get_product(product_id)
    if not product:
        return _redirect_missing_product(request)

    detail = await products_service.product_detail(product, get_distribution_configuration())
    extra = {"title": product["name"], **detail}
    return _render_template("admin/products/show.html", request, extra=extra)


@app.get("/admin/products/{product_id}/users", response_class=HTMLResponse)
async def admin_product_distribution_users_page(
    request: Request,
    product_id: int,
    type: str = Query(default=""),
    from_level: float = Query(..., alias="fromLevel"),
    to_level: float | None = Query(default=None, alias="toLevel"),
):
    product = await products_repo.get_product(product_id)
    if not product:
        return _redirect_missing_product(request, "danger")

    distribution = distributions_repo.get_distribution(type)
    if distribution is None:
        return _redirect(f"/admin/products/{product_id}")

    users = await distribution.distribution_list(product_id, from_level, to_level)
    extra = {
        "title": f"{product['name']}: {distribution.metric.label}",
        "product": product,
        "type": type,
        "label": distribution.metric.label,
        "from_level": from_level,
        "to_level": to_level,
        "users": users,
    }
    return _render_template("admin/products/user_list.html", request, extra=extra)


@app.get("/admin/products/{product_id}/edit", response_class=HTMLResponse)
async def admin_product_edit_page(request: Request, product_id: int):
    product = await products_repo.get_product(product_id)
    if not product:
        return _redirect_missing_product(request)

    tags = await products_repo.list_product_tags(product_id)
    values = {**product, "tags": [tag["id"] for tag in tags]}
    return await _render_product_form(request, product=product, values=values)


@app.post("/admin/products/{product_id}")
async def admin_update_product(request: Request, product_id: int):
    product = await products_repo.get_product(product_id)
    if not product:
        return _redirect_missing_product(request)

    values = _product_form_values(await request.form())
    try:
        product_form = ProductForm.model_validate(values)
        result = await products_service.save_product(
            product_form, product_id, ip_address=client_ip(request)
        )
    except ValidationError as exc:
        return await _render_product_form(
            request,
            product=product,
            values=values,
            errors=_validation_messages(exc),
            status_code=status.HTTP_400_BAD_REQUEST,
        )
    except products_service.ProductValidationError as exc:
        return await _render_product_form(
            request,
            product=product,
            values=values,
            errors=exc.errors,
            status_code=status.HTTP_400_BAD_REQUEST,
        )
    except products_service.ProductNotFoundError:
        return _redirect_missing_product(request)

    _flash(request, MESSAGES["product_updated"], "success")
    return _redirect(f"/admin/products/{result.product['id']}")


@app.post("/admin/products/{product_id}/sorting")
async def admin_reorder_product(request: Request, product_id: int):
    form = await request.form()
    try:
        position = int(str(form.get("position", "")).strip())
    except ValueError:
        log_warning("Rejected product reorder", product_id=product_id, position=form.get("position"))
        return _redirect("/admin/products")

    try:
        await products_service.reorder_product(
            product_id, max(position, 0), ip_address=client_ip(request)
        )
    except products_service.ProductNotFoundError:
        return _redirect_missing_product(request)

    logger.debug("Product {product_id} moved to {position}", product_id=product_id, position=position)
    _flash(request, MESSAGES["product_reordered"], "success")
    return_to = str(form.get("return_to") or "")
    if not return_to.startswith("/admin/products"):
        return_to = "/admin/products"
    return _redirect(return_to)
