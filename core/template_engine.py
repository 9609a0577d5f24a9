# core/template_engine.py
"""
Template Renderer for Campaign Delivery
Renders campaign content per recipient with HTML sanitization, a plain-text
alternative, optional CSS inlining and tracking instrumentation
"""

import re
import logging
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field
from datetime import datetime

from jinja2 import Environment, select_autoescape, StrictUndefined
from jinja2.exceptions import TemplateError
import bleach
from bleach.css_sanitizer import CSSSanitizer
import premailer
from bs4 import BeautifulSoup

from core.errors import TemplateRenderingError

# Configure logging
logger = logging.getLogger(__name__)


@dataclass
class SecurityWarning:
    """Security warning information"""
    level: str  # 'low', 'medium', 'high', 'critical'
    category: str
    message: str


@dataclass
class TrackingLinks:
    """Per-recipient tracking URLs; any of them may be absent"""
    open_url: Optional[str] = None
    unsubscribe_url: Optional[str] = None
    click_url: Optional[Any] = None  # callable(target_url) -> tracked url


@dataclass
class RenderedMessage:
    """Result of rendering one campaign for one recipient"""
    subject: str
    html: Optional[str]
    text: Optional[str]
    security_warnings: List[SecurityWarning] = field(default_factory=list)
    size_bytes: int = 0
    render_time_ms: float = 0.0


class SecureTemplateEngine:
    """
    Campaign template renderer

    Any template or merge-variable problem raises TemplateRenderingError,
    which the dispatch worker treats as a permanent per-item failure.
    """

    EMAIL_SAFE_TAGS = frozenset([
        'p', 'br', 'strong', 'em', 'b', 'i', 'u', 's', 'sub', 'sup',
        'h1', 'h2', 'h3', 'h4', 'h5', 'h6',
        'ul', 'ol', 'li', 'dl', 'dt', 'dd',
        'a', 'img', 'figure', 'figcaption',
        'table', 'thead', 'tbody', 'tfoot', 'tr', 'td', 'th', 'caption',
        'div', 'span', 'section', 'article', 'header', 'footer',
        'hr', 'blockquote', 'pre', 'code',
        'center'  # Legacy email client support
    ])

    EMAIL_SAFE_ATTRIBUTES = {
        '*': ['class', 'id', 'style', 'title', 'dir', 'lang'],
        'a': ['href', 'title', 'rel', 'target'],
        'img': ['src', 'alt', 'width', 'height', 'border', 'align', 'title'],
        'table': ['border', 'cellpadding', 'cellspacing', 'width', 'align', 'bgcolor'],
        'td': ['colspan', 'rowspan', 'width', 'height', 'align', 'valign', 'bgcolor'],
        'th': ['colspan', 'rowspan', 'width', 'height', 'align', 'valign', 'bgcolor'],
        'tr': ['align', 'valign', 'bgcolor'],
    }

    ALLOWED_CSS_PROPERTIES = [
        'color', 'background-color', 'background',
        'font-family', 'font-size', 'font-weight', 'font-style',
        'text-align', 'text-decoration', 'text-transform',
        'margin', 'margin-top', 'margin-bottom', 'margin-left', 'margin-right',
        'padding', 'padding-top', 'padding-bottom', 'padding-left', 'padding-right',
        'border', 'border-color', 'border-style', 'border-width',
        'width', 'height', 'max-width', 'min-width',
        'display', 'line-height', 'vertical-align'
    ]

    # Elements whose content must never survive as text
    NON_CONTENT_TAGS = ['script', 'style', 'head', 'title', 'meta', 'link']

    TRACKABLE_SCHEMES = ('http://', 'https://')

    def __init__(self, enable_css_inlining: bool = True, sanitize_html: bool = True,
                 max_template_size: int = 1024 * 1024):  # 1MB limit
        self.enable_css_inlining = enable_css_inlining
        self.sanitize_html = sanitize_html
        self.max_template_size = max_template_size

        self.html_env = Environment(
            autoescape=select_autoescape(['html', 'xml'], default_for_string=True),
            undefined=StrictUndefined,  # Fail on undefined merge fields
            trim_blocks=True,
            lstrip_blocks=True,
            cache_size=100
        )
        self.text_env = Environment(
            autoescape=False,
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
            cache_size=100
        )

        self.html_cleaner = bleach.Cleaner(
            tags=self.EMAIL_SAFE_TAGS,
            attributes=self.EMAIL_SAFE_ATTRIBUTES,
            protocols=['http', 'https', 'mailto'],
            css_sanitizer=CSSSanitizer(allowed_css_properties=self.ALLOWED_CSS_PROPERTIES),
            strip=True,  # Strip disallowed tags instead of escaping
            strip_comments=True
        )

    def render(self, subject_template: str, html_template: Optional[str], variables: Dict[str, Any],
               text_template: Optional[str] = None,
               tracking: Optional[TrackingLinks] = None) -> RenderedMessage:
        """
        Render subject, HTML and text parts for one recipient

        Args:
            subject_template: Jinja2 subject line
            html_template: Jinja2 HTML body
            variables: Recipient merge variables
            text_template: Optional explicit plain-text body
            tracking: Tracking URLs to embed, or None to send untracked
        """
        start_time = datetime.now()

        if not html_template and not text_template:
            raise TemplateRenderingError("Campaign has no content to render")

        for template in (subject_template, html_template, text_template):
            if template and len(template.encode('utf-8')) > self.max_template_size:
                raise TemplateRenderingError(f"Template size exceeds limit of {self.max_template_size} bytes")

        context = dict(variables)
        if tracking and tracking.unsubscribe_url:
            context.setdefault('unsubscribe_url', tracking.unsubscribe_url)

        try:
            subject = self.text_env.from_string(subject_template or '').render(**context).strip()
            html = self.html_env.from_string(html_template).render(**context) if html_template else None
            text = self.text_env.from_string(text_template).render(**context) if text_template else None
        except TemplateError as e:
            raise TemplateRenderingError(f"Template rendering failed: {e}")

        warnings: List[SecurityWarning] = []
        if html:
            if self.enable_css_inlining:
                html = self._inline_css(html, warnings)
            if self.sanitize_html:
                html = self._sanitize(html)
            warnings.extend(self._scan_html_security(html))
            if tracking:
                html = self._apply_tracking(html, tracking, uses_unsubscribe='unsubscribe_url' in (html_template or ''))
            if not text:
                text = self._html_to_text(html)

        critical = [w for w in warnings if w.level == 'critical']
        if critical:
            raise TemplateRenderingError(f"Critical security issues in template: {[w.message for w in critical]}")

        message = RenderedMessage(subject=subject, html=html, text=text, security_warnings=warnings)
        message.size_bytes = sum(len(part.encode('utf-8')) for part in (html, text) if part)
        if message.size_bytes > 102400:  # 100KB warning threshold
            warnings.append(SecurityWarning(
                level='medium',
                category='performance',
                message=f'Email size ({message.size_bytes:,} bytes) may cause delivery issues'
            ))
        message.render_time_ms = (datetime.now() - start_time).total_seconds() * 1000
        logger.debug(f"Rendered message in {message.render_time_ms:.2f}ms, {message.size_bytes:,} bytes")
        return message

    def _sanitize(self, html_content: str) -> str:
        soup = BeautifulSoup(html_content, 'html.parser')
        for tag in soup.find_all(self.NON_CONTENT_TAGS):
            tag.decompose()
        return self.html_cleaner.clean(str(soup))

    def _scan_html_security(self, html_content: str) -> List[SecurityWarning]:
        """Scan rendered HTML for anything the sanitizer should have removed"""
        warnings = []
        soup = BeautifulSoup(html_content, 'html.parser')

        for tag in soup.find_all():
            dangerous_attrs = [attr for attr in tag.attrs if attr.lower().startswith('on')]
            if dangerous_attrs:
                warnings.append(SecurityWarning(
                    level='critical',
                    category='xss',
                    message=f'JavaScript event handler found in {tag.name} tag: {dangerous_attrs}'
                ))
            for attr in ('href', 'src'):
                value = str(tag.attrs.get(attr, '')).lower()
                if any(scheme in value for scheme in ('javascript:', 'vbscript:')):
                    warnings.append(SecurityWarning(
                        level='critical',
                        category='xss',
                        message=f'Dangerous {attr} value in {tag.name} tag'
                    ))

        if soup.find_all('script'):
            warnings.append(SecurityWarning(level='critical', category='xss', message='Script tags found in HTML'))

        return warnings

    def _apply_tracking(self, html_content: str, tracking: TrackingLinks, uses_unsubscribe: bool) -> str:
        """Rewrite links for click tracking and append the pixel and unsubscribe footer"""
        soup = BeautifulSoup(html_content, 'html.parser')

        if tracking.click_url:
            for link in soup.find_all('a', href=True):
                href = link['href']
                if href.startswith(self.TRACKABLE_SCHEMES) and href != tracking.unsubscribe_url:
                    link['href'] = tracking.click_url(href)

        if tracking.unsubscribe_url and not uses_unsubscribe:
            footer = soup.new_tag('p', style='font-size:12px;color:#666666;')
            anchor = soup.new_tag('a', href=tracking.unsubscribe_url)
            anchor.string = 'Unsubscribe'
            footer.append(anchor)
            soup.append(footer)

        if tracking.open_url:
            pixel = soup.new_tag('img', src=tracking.open_url, width='1', height='1', alt='',
                                 style='display:block;width:1px;height:1px;border:0;')
            soup.append(pixel)

        return str(soup)

    def _inline_css(self, html_content: str, warnings: List[SecurityWarning]) -> str:
        """
        Inline CSS styles for better email client compatibility
        """
        try:
            p = premailer.Premailer(
                html_content,
                remove_classes=False,  # Keep classes for fallback
                keep_style_tags=False,
                strip_important=False,
                disable_validation=True,
                external_styles=None  # Don't fetch external stylesheets
            )
            return p.transform()
        except Exception as e:
            logger.warning(f"CSS inlining failed: {str(e)}")
            warnings.append(SecurityWarning(
                level='low',
                category='css',
                message='CSS inlining failed, email rendering may be inconsistent'
            ))
            return html_content

    def _html_to_text(self, html_content: str) -> str:
        """
        Convert HTML to plain text with proper formatting for email
        """
        soup = BeautifulSoup(html_content, 'html.parser')

        for img in soup.find_all('img'):
            img.decompose()

        for br in soup.find_all('br'):
            br.replace_with('\n')

        for p in soup.find_all('p'):
            p.insert_after('\n\n')

        for header in soup.find_all(['h1', 'h2', 'h3', 'h4', 'h5', 'h6']):
            header.insert_before('\n')
            header.insert_after('\n')

        for li in soup.find_all('li'):
            li.insert_before('* ')
            li.insert_after('\n')

        for link in soup.find_all('a', href=True):
            link_text = link.get_text()
            href = link['href']
            if href != link_text:
                link.replace_with(f"{link_text} ({href})")

        text = soup.get_text()
        text = re.sub(r'\n\s*\n', '\n\n', text)  # Collapse empty lines
        text = re.sub(r'[ \t]+', ' ', text)      # Normalize spaces
        return text.strip()
