"""UI-refinement chat endpoints and the element-picker preview proxy."""

import logging
from typing import Any

import httpx
from fastapi import APIRouter
from fastapi.responses import HTMLResponse, JSONResponse

from clickup_orchestrator.api.models import (
    ChatRequest,
    ChatResponse,
    CreateSessionRequest,
    QueueStatusResponse,
    SessionResponse,
)
from clickup_orchestrator.factory import get_refinement_sessions

logger = logging.getLogger(__name__)

router = APIRouter()

PROXY_TIMEOUT_SECONDS = 15.0

# Highlights the hovered element and posts its metadata to the parent frame on click.
ELEMENT_PICKER_SCRIPT = """
<script>
(function() {
    const HIGHLIGHT_STYLE = 'outline: 2px solid #4f46e5 !important; outline-offset: 2px !important; background: rgba(79, 70, 229, 0.1) !important;';
    let currentHighlight = null;
    let originalStyle = null;

    function getXPath(element) {
        if (element.id) return `//*[@id="${element.id}"]`;
        if (element === document.body) return '/html/body';
        let ix = 0;
        const siblings = element.parentNode ? element.parentNode.childNodes : [];
        for (let i = 0; i < siblings.length; i++) {
            const sibling = siblings[i];
            if (sibling === element) {
                const parentPath = element.parentNode ? getXPath(element.parentNode) : '';
                return `${parentPath}/${element.tagName.toLowerCase()}[${ix + 1}]`;
            }
            if (sibling.nodeType === 1 && sibling.tagName === element.tagName) ix++;
        }
        return '';
    }

    function getCssSelector(element) {
        if (element.id) return `#${element.id}`;
        const path = [];
        while (element && element.nodeType === Node.ELEMENT_NODE) {
            let selector = element.tagName.toLowerCase();
            if (element.id) {
                path.unshift(`#${element.id}`);
                break;
            }
            if (element.className && typeof element.className === 'string') {
                const classes = element.className.trim().split(/\\s+/).slice(0, 2).join('.');
                if (classes) selector += `.${classes}`;
            }
            let sibling = element;
            let nth = 1;
            while ((sibling = sibling.previousElementSibling)) {
                if (sibling.tagName === element.tagName) nth++;
            }
            if (nth > 1) selector += `:nth-of-type(${nth})`;
            path.unshift(selector);
            element = element.parentElement;
        }
        return path.join(' > ');
    }

    function extractMetadata(el) {
        const attrs = {};
        for (const attr of el.attributes) attrs[attr.name] = attr.value;
        const rect = el.getBoundingClientRect();
        return {
            tagName: el.tagName.toLowerCase(),
            id: el.id || undefined,
            classList: Array.from(el.classList),
            attributes: attrs,
            textContent: el.textContent?.trim().slice(0, 100),
            xpath: getXPath(el),
            cssSelector: getCssSelector(el),
            boundingRect: { x: rect.x, y: rect.y, width: rect.width, height: rect.height }
        };
    }

    document.addEventListener('mousemove', function(e) {
        if (currentHighlight && currentHighlight !== e.target) {
            currentHighlight.style.cssText = originalStyle || '';
        }
        const target = e.target;
        if (target === document.body || target === document.documentElement) return;
        originalStyle = target.style.cssText;
        target.style.cssText += HIGHLIGHT_STYLE;
        currentHighlight = target;
    }, true);

    document.addEventListener('click', function(e) {
        e.preventDefault();
        e.stopPropagation();
        window.parent.postMessage({ type: 'element-selected', metadata: extractMetadata(e.target) }, '*');
    }, true);

    document.addEventListener('submit', (e) => e.preventDefault(), true);
})();
</script>
"""


def inject_element_picker(html: str) -> str:
    """Insert the picker script before </body>, or append it if there is none."""
    index = html.rfind("</body>")
    if index == -1:
        return html + ELEMENT_PICKER_SCRIPT
    return html[:index] + ELEMENT_PICKER_SCRIPT + html[index:]


@router.post("/ui-refinements/session", response_model=SessionResponse)
async def create_session(request: CreateSessionRequest) -> SessionResponse:
    session = get_refinement_sessions().create(request.branch_name)
    return SessionResponse(session_id=session.id, branch_name=session.branch_name)


@router.post("/ui-refinements/chat", response_model=ChatResponse)
async def send_chat(request: ChatRequest) -> ChatResponse:
    """Run the message now if the session is idle, otherwise queue it.

    Raises:
        NotFoundError: Unknown session (404)
        ValidationError: Unknown agent or no working directory (400)
    """
    result = await get_refinement_sessions().chat(
        request.session_id, request.message, request.agent, request.element_context
    )
    return ChatResponse(**result)


@router.get("/ui-refinements/queue/{session_id}", response_model=QueueStatusResponse)
async def queue_status(session_id: str) -> QueueStatusResponse:
    return QueueStatusResponse(**get_refinement_sessions().queue_status(session_id))


@router.delete("/ui-refinements/queue/{session_id}/{message_id}")
async def cancel_queued_message(session_id: str, message_id: str) -> dict[str, Any]:
    return {"success": get_refinement_sessions().cancel(session_id, message_id)}


@router.get("/ui-refinements/proxy", response_model=None)
async def proxy_page(url: str) -> HTMLResponse | JSONResponse:
    """Fetch a page of the app under refinement with the element picker injected."""
    try:
        async with httpx.AsyncClient(
            timeout=PROXY_TIMEOUT_SECONDS, follow_redirects=True
        ) as client:
            response = await client.get(url)
    except httpx.HTTPError as e:
        logger.warning(f"[Proxy] Failed to fetch {url}: {e}")
        return JSONResponse({"error": f"Failed to fetch URL: {e}"})

    if not response.is_success:
        return JSONResponse({"error": f"Failed to fetch URL: {response.status_code}"})
    content_type = response.headers.get("content-type", "text/html")
    if "text/html" not in content_type:
        return JSONResponse({"error": "URL does not return HTML content"})
    return HTMLResponse(inject_element_picker(response.text))
