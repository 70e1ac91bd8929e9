"""Template storage and rendering for email notifications.

Bodies are Jinja2 sources rendered with strict undefined checking (HTML
auto-escaped, plain text not). Subjects use literal ``${key}`` placeholders
replaced one key at a time in sorted key order; placeholders with no
matching variable are left as they are.
"""

from typing import Any, Dict, List, Mapping, Optional, Tuple

from jinja2 import Environment, StrictUndefined, Template, TemplateError

from mailqueue.domain.models import EmailTemplate
from mailqueue.logging import get_logger
from mailqueue.persistence import Database, TemplateRepository
from mailqueue.utils.timestamps import Clock, utc_now

from .default_templates import load_default_templates
from .models import NotificationTemplateError, RenderedEmail, TemplateNotFoundError

logger = get_logger(__name__, component="templates")


def render_subject(subject: Optional[str], variables: Optional[Mapping[str, Any]]) -> Optional[str]:
    """Replace ``${key}`` placeholders in a subject line.

    Example:
        >>> render_subject("Update - ${jobTitle}", {"jobTitle": "Engineer"})
        'Update - Engineer'
    """
    if subject is None or not variables:
        return subject

    rendered = subject
    for key in sorted(variables):
        placeholder = "${" + str(key) + "}"
        if placeholder in rendered:
            rendered = rendered.replace(placeholder, str(variables[key]))

    return rendered.strip().replace("\r", " ").replace("\n", " ")


class TemplateService:
    """Stores templates in the database and renders them."""

    def __init__(self, database: Database, clock: Clock = utc_now):
        self._database = database
        self._clock = clock

        self._html_env = Environment(autoescape=True, undefined=StrictUndefined)
        self._text_env = Environment(autoescape=False, undefined=StrictUndefined)
        # (name, autoescape) -> (source, compiled template); one entry per body
        self._compiled: Dict[Tuple[str, bool], Tuple[str, Template]] = {}

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def get_template(self, name: str) -> Optional[EmailTemplate]:
        """Return the active template called ``name``, or None."""
        with self._database.session() as session:
            template = TemplateRepository(session).get(name)
        if template is None or not template.active:
            return None
        return template

    def list_templates(self) -> List[EmailTemplate]:
        with self._database.session() as session:
            return TemplateRepository(session).list_active()

    def create_template(self, template: EmailTemplate) -> EmailTemplate:
        """Store a new template.

        Raises:
            ValueError: If a template with the same name exists
        """
        self._check_syntax(template)
        with self._database.session() as session:
            repo = TemplateRepository(session)
            if repo.exists(template.name):
                raise ValueError(f"Template with name '{template.name}' already exists")
            saved = repo.save(template, self._clock())

        logger.info(
            f"Created template {template.name}",
            extra={"event": "template.created", "template_name": template.name},
        )
        return saved

    def update_template(self, name: str, template: EmailTemplate) -> EmailTemplate:
        """Replace the content of an existing template (active or not).

        Raises:
            TemplateNotFoundError: If no template called ``name`` exists
        """
        self._check_syntax(template)
        with self._database.session() as session:
            repo = TemplateRepository(session)
            if not repo.exists(name):
                raise TemplateNotFoundError(name)
            saved = repo.save(template.model_copy(update={"name": name}), self._clock())

        logger.info(
            f"Updated template {name}",
            extra={"event": "template.updated", "template_name": name},
        )
        return saved

    def initialize_default_templates(self) -> int:
        """Seed the built-in templates that are not stored yet.

        Returns:
            Number of templates created
        """
        created = 0
        with self._database.session() as session:
            repo = TemplateRepository(session)
            for template in load_default_templates():
                if repo.exists(template.name):
                    continue
                repo.save(template, self._clock())
                created += 1

        if created:
            logger.info(
                f"Initialized {created} default templates",
                extra={"event": "template.defaults_initialized", "count": created},
            )
        return created

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def render(self, template_name: str, variables: Optional[Mapping[str, Any]] = None) -> RenderedEmail:
        """Render subject and bodies of a stored template.

        Template defaults are merged under ``variables``.

        Raises:
            TemplateNotFoundError: If the template is absent or inactive
            NotificationTemplateError: If rendering fails
        """
        template = self.get_template(template_name)
        if template is None:
            logger.warning(
                f"Template not found or inactive: {template_name}",
                extra={"event": "template.not_found", "template_name": template_name},
            )
            raise TemplateNotFoundError(template_name)

        context = {**template.default_variables, **(variables or {})}

        try:
            html_body = self._compile(template_name, template.html_content, True).render(context)
            text_body = (
                self._compile(template_name, template.text_content, False).render(context)
                if template.text_content
                else ""
            )
        except TemplateError as e:
            error_msg = f"Template rendering failed for {template_name}: {e}"
            logger.error(error_msg, exc_info=True)
            raise NotificationTemplateError(error_msg) from e
        except Exception as e:
            # Errors raised while evaluating expressions, e.g. a division by zero
            error_msg = f"Template rendering failed for {template_name}: {type(e).__name__}: {e}"
            logger.error(error_msg, exc_info=True)
            raise NotificationTemplateError(error_msg) from e

        subject = render_subject(template.subject, context)
        logger.debug(f"Rendered template {template_name}")
        return RenderedEmail(subject=subject, html_body=html_body, text_body=text_body)

    def _compile(self, name: str, source: str, autoescape: bool) -> Template:
        key = (name, autoescape)
        cached = self._compiled.get(key)
        if cached is not None and cached[0] == source:
            return cached[1]

        compiled = self._environment(autoescape).from_string(source)
        self._compiled[key] = (source, compiled)
        return compiled

    def _environment(self, autoescape: bool) -> Environment:
        return self._html_env if autoescape else self._text_env

    def _check_syntax(self, template: EmailTemplate) -> None:
        try:
            self._environment(True).parse(template.html_content)
            if template.text_content:
                self._environment(False).parse(template.text_content)
        except TemplateError as e:
            raise NotificationTemplateError(
                f"Template {template.name} has invalid syntax: {e}"
            ) from e
