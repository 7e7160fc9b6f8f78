from .main import create_app
from .client import HttpRecordStore
