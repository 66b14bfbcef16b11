from .thread import Message, Thread  # noqa: F401
from .report import Report  # noqa: F401
from .entity import Entity, EntityMention  # noqa: F401
