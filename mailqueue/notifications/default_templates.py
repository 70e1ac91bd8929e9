"""Built-in templates seeded into an empty template store.

Bodies live as Jinja2 files in the ``email_templates`` directory of this
package; subjects use ``${key}`` placeholders.
"""

from typing import Dict, List

from jinja2 import Environment, PackageLoader

from mailqueue.domain.models import EmailTemplate

TEMPLATE_PACKAGE = "mailqueue.notifications"
TEMPLATE_DIR = "email_templates"

DEFAULT_APP_NAME = "JobApp"

# name -> (subject, default variables)
DEFAULT_TEMPLATE_SPECS: Dict[str, tuple] = {
    "registration-confirmation": (
        "Welcome to JobApp - Please confirm your registration",
        {"app_name": DEFAULT_APP_NAME, "role": "Candidate"},
    ),
    "application-status-update": (
        "Application Status Update - ${jobTitle}",
        {"app_name": DEFAULT_APP_NAME, "notes": ""},
    ),
    "job-application-received": (
        "New Application Received - ${jobTitle}",
        {"app_name": DEFAULT_APP_NAME},
    ),
}


def load_default_templates() -> List[EmailTemplate]:
    """Read the packaged template sources into EmailTemplate models."""
    loader = PackageLoader(TEMPLATE_PACKAGE, TEMPLATE_DIR)
    env = Environment(loader=loader)

    templates = []
    for name, (subject, default_variables) in DEFAULT_TEMPLATE_SPECS.items():
        html_source, _, _ = loader.get_source(env, f"{name}.html.j2")
        text_source, _, _ = loader.get_source(env, f"{name}.txt.j2")
        templates.append(
            EmailTemplate(
                name=name,
                subject=subject,
                html_content=html_source,
                text_content=text_source,
                default_variables=dict(default_variables),
                active=True,
            )
        )
    return templates
