"""Home page and greeting demo routes"""

from fastapi import APIRouter, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse

from webstarter.core.errors import is_htmx
from webstarter.core.flash import FLASH_SUCCESS, add_flash, get_flashes
from webstarter.core.templates import templates

router = APIRouter()


@router.get("/", response_class=HTMLResponse)
async def home(request: Request):
    """Landing page; shows and consumes pending flash messages"""
    flashes = get_flashes(request.session)
    return templates.TemplateResponse(request, "home.html", {"flashes": flashes})


@router.post("/greet")
async def greet(request: Request, name: str = Form("")):
    """
    Greeting form.

    HTMX requests get the greeting fragment back; plain form posts get a
    success flash and a redirect to the home page.
    """
    name = name.strip() or "World"

    if is_htmx(request):
        return templates.TemplateResponse(request, "partials/greeting.html", {"name": name})

    add_flash(request.session, FLASH_SUCCESS, f"Hello, {name}!")
    return RedirectResponse(url="/", status_code=303)
