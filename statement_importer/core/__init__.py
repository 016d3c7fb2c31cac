"""Core package: provides models, database helpers, settings, errors and shared utilities."""

from .db import Database  # noqa: F401
from .errors import ImportPipelineError  # noqa: F401
from .models import FileType, JobStatus  # noqa: F401
from .settings import Settings, get_settings  # noqa: F401
from .utils import get_logger  # noqa: F401
