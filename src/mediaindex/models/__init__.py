from sqlalchemy.orm import declarative_base

Base = declarative_base()

from .item import Item  # noqa: F401
from .item_folder import ItemFolder  # noqa: F401
from .item_tag import ItemTag  # noqa: F401
from .cache_info import CacheInfo  # noqa: F401
from .application_lock import ApplicationLock  # noqa: F401
