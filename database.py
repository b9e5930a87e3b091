"""
MongoDB connection helpers.

Connection settings come from the environment:
- DATABASE_URL  (default mongodb://localhost:27017)
- DATABASE_NAME (default bookstore_pos)

Checkout relies on multi-document transactions, so the server must be a
replica set (a single-node replica set is enough for development).
"""
import os
from functools import lru_cache

from pymongo import MongoClient
from pymongo.database import Database

DEFAULT_URL = "mongodb://localhost:27017"
DEFAULT_NAME = "bookstore_pos"


def database_url() -> str:
    return os.getenv("DATABASE_URL", DEFAULT_URL)


def database_name() -> str:
    return os.getenv("DATABASE_NAME", DEFAULT_NAME)


@lru_cache(maxsize=1)
def get_client() -> MongoClient:
    # MongoClient connects lazily; nothing touches the network here.
    return MongoClient(database_url(), tz_aware=True)


def get_db() -> Database:
    return get_client()[database_name()]


