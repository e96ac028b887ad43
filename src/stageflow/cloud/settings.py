from __future__ import annotations
import os

DATABASE_URL = os.environ["DATABASE_URL"]
