"""
Certified PDF generation for Domux.

Renders a computo metrico (line items, totals, narrative report, before/after
images and the certification footer) to PDF using WeasyPrint and a Jinja2
template.

Architecture:
- Uses Jinja2 for HTML template rendering
- Uses WeasyPrint for HTML to PDF conversion
- Output is deterministic for identical inputs: the metadata timestamp is
  the only clock the document sees, embedded as the PDF creation date

The builder never hashes or uploads; the finalization pipeline hashes the
returned bytes and stores them.
"""

from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union
import base64
import re
import time

import structlog
from jinja2 import Environment, FileSystemLoader, select_autoescape

from config.errors import ErrorCode, ServiceError
from models.computo import CertificationMetadata, ComputoItem, compute_total, find_amount_drift
from models.session import ProjectSession
from models.user import UserProfile
from services.image_normalizer import ImageFile
from services.storage_service import is_durable_url

# Configure structlog logger
logger = structlog.get_logger(__name__)

# Template directory
TEMPLATE_DIR = Path(__file__).parent.parent / "templates"

# Assets directory
ASSETS_DIR = Path(__file__).parent.parent / "assets"

TEMPLATE_NAME = "computo_report.html"

DEFAULT_FILENAME = "computo"
MAX_FILENAME_LENGTH = 100

ImageInput = Union[ImageFile, str, None]


def _load_logo_base64() -> str:
    """
    Load logo image as base64 string for embedding in PDF.

    Returns:
        Base64-encoded PNG string, or empty string if not found
    """
    logo_path = ASSETS_DIR / "logo.png"
    if logo_path.exists():
        with open(logo_path, "rb") as f:
            return base64.b64encode(f.read()).decode("utf-8")
    logger.debug("logo_not_found", path=str(logo_path))
    return ""


# =============================================================================
# Formatting helpers
# =============================================================================


def format_euro(value: float) -> str:
    """Italian currency formatting: 1234.5 -> '1.234,50 €'."""
    formatted = f"{value:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")
    return f"{formatted} €"


def format_quantity(value: float) -> str:
    formatted = f"{value:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")
    return formatted


def format_timestamp(timestamp: str) -> str:
    """ISO-8601 timestamp -> 'DD/MM/YYYY HH:MM' (unchanged if unparseable)."""
    try:
        parsed = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    except ValueError:
        return timestamp
    return parsed.strftime("%d/%m/%Y %H:%M")


def sanitize_filename(name: str) -> str:
    """Reduce a project name to a storage-safe filename stem.

    Characters other than ASCII letters, digits, underscore, whitespace and
    hyphen are dropped, whitespace runs become a single underscore and the
    result is cut to 100 characters.
    """
    cleaned = re.sub(r"[^\w\s-]", "", name or "", flags=re.ASCII)
    cleaned = re.sub(r"\s+", "_", cleaned.strip())
    return cleaned[:MAX_FILENAME_LENGTH] or DEFAULT_FILENAME


def build_artifact_filename(project_name: str, readable_id: str) -> str:
    return f"{sanitize_filename(project_name)}_{readable_id}.pdf"


def _image_src(image: ImageInput) -> Optional[str]:
    """Resolve an image argument to something an <img src> can load."""
    if image is None:
        return None
    if isinstance(image, ImageFile):
        return image.to_data_url()
    if image.startswith("data:"):
        return image
    if image.startswith(("http://", "https://")):
        if not is_durable_url(image):
            logger.warning("image_url_rejected", url=image)
            raise ServiceError(
                code=ErrorCode.ARTIFACT_BUILD_FAILED,
                message="Images must be data URLs or Firebase Storage download URLs",
                stage="artifact",
                details={"url": image}
            )
        return image
    # Bare base64 payloads are JPEG previews
    return f"data:image/jpeg;base64,{image}"


def _report_paragraphs(report_text: str) -> List[str]:
    blocks = re.split(r"\n\s*\n", report_text or "")
    return [block.strip() for block in blocks if block.strip()]


# =============================================================================
# Template Engine Setup
# =============================================================================


def _get_jinja_env() -> Environment:
    """
    Create and configure Jinja2 environment.

    Returns:
        Configured Jinja2 Environment
    """
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=select_autoescape(["html", "xml"]),
    )
    env.filters["euro"] = format_euro
    env.filters["quantity"] = format_quantity
    return env


# =============================================================================
# PDF Generation
# =============================================================================


def render_html(
    items: List[ComputoItem],
    report_text: str,
    user: UserProfile,
    session: ProjectSession,
    metadata: CertificationMetadata,
    original_image: ImageInput = None,
    generated_image: ImageInput = None,
) -> str:
    """
    Render HTML from the Jinja2 template.

    Args:
        items: Estimate line items, printed in the given order
        report_text: Narrative report (blank lines separate paragraphs)
        user: Acting user, printed in the header
        session: Session snapshot (project name, customer, location)
        metadata: Certification metadata for the header and footer
        original_image: Site photo (ImageFile, data URL, URL or base64)
        generated_image: Renovation preview (same accepted forms)

    Returns:
        Rendered HTML string
    """
    env = _get_jinja_env()
    template = env.get_template(TEMPLATE_NAME)

    context = {
        "logo_base64": _load_logo_base64(),
        "issuer": user.label,
        "issuer_email": user.email or "",
        "project_name": session.project_name,
        "location": session.context.location,
        "committente": session.context.committente,
        "description": session.context.full_description,
        "items": items,
        "total": compute_total(items),
        "report_paragraphs": _report_paragraphs(report_text),
        "original_image": _image_src(original_image),
        "generated_image": _image_src(generated_image),
        "metadata": metadata,
        "created_at": metadata.timestamp,
        "created_display": format_timestamp(metadata.timestamp),
    }

    return template.render(**context)


def _url_fetcher(url: str, *args, **kwargs):
    """WeasyPrint fetcher limited to data URIs and Firebase Storage downloads."""
    if not (url.startswith("data:") or is_durable_url(url)):
        raise ValueError(f"Blocked resource URL: {url}")
    from weasyprint import default_url_fetcher
    return default_url_fetcher(url, *args, **kwargs)


def _html_to_pdf(html_content: str) -> bytes:
    """
    Convert HTML to PDF using WeasyPrint.

    Args:
        html_content: Rendered HTML string

    Returns:
        PDF content as bytes
    """
    from weasyprint import HTML
    from weasyprint.text.fonts import FontConfiguration

    font_config = FontConfiguration()

    # Create HTML document
    html_doc = HTML(
        string=html_content,
        base_url=str(TEMPLATE_DIR),
        url_fetcher=_url_fetcher
    )

    # Generate PDF
    return html_doc.write_pdf(font_config=font_config)


def build_artifact(
    items: List[ComputoItem],
    report_text: str,
    user: UserProfile,
    session: ProjectSession,
    metadata: CertificationMetadata,
    original_image: ImageInput = None,
    generated_image: ImageInput = None,
) -> bytes:
    """
    Build the certified PDF.

    Amounts are printed as given; lines whose amount disagrees with
    quantity x unit price are only logged.

    Returns:
        PDF content as bytes

    Raises:
        ServiceError: ARTIFACT_BUILD_FAILED if rendering fails
    """
    start_time = time.time()

    drifted = find_amount_drift(items)
    if drifted:
        logger.warning("amount_drift", readable_id=metadata.readable_id, item_ids=drifted)

    try:
        html_content = render_html(
            items,
            report_text,
            user,
            session,
            metadata,
            original_image=original_image,
            generated_image=generated_image,
        )
        pdf_bytes = _html_to_pdf(html_content)
    except Exception as e:
        logger.error("artifact_build_failed", readable_id=metadata.readable_id, error=str(e))
        raise ServiceError(
            code=ErrorCode.ARTIFACT_BUILD_FAILED,
            message=f"Could not create the PDF document: {str(e)}",
            stage="artifact",
            details={"readable_id": metadata.readable_id}
        )

    logger.info(
        "artifact_built",
        readable_id=metadata.readable_id,
        items=len(items),
        total=compute_total(items),
        file_size_bytes=len(pdf_bytes),
        duration_ms=int((time.time() - start_time) * 1000),
    )
    return pdf_bytes

