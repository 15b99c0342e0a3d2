"""Shared utilities for RGAP."""

# Configuration and domain constants
from utils.config import (
    AppConfig,
    FILTER_LIMITS,
    MAX_NOTE_LENGTH,
    ORG_NAMES,
    RECIPIENT_TYPE_LABELS,
)

# Database utilities
from utils.database import (
    connect,
    get_query_stats,
    get_slow_queries,
    get_table_count,
    init_pragmas,
    query_one,
    query_scalar,
    query_to_dicts,
    transaction,
)

# Query building
from utils.query import (
    build_grant_order_clause,
    build_grant_where_clause,
    build_order_clause,
    build_pagination,
    clamp_pagination,
    contains_match,
    escape_like,
)

# Caching
from utils.cache import TTLCache

# Grant amendments
from utils.amendments import attach_amendments, build_amendment_list

# Output formatting
from utils.formatting import (
    format_amount,
    format_count,
    format_currency,
    format_date,
    format_date_diff,
    truncate_text,
)

# Validation
from utils.validation import clean_note, validate_password

__all__ = [
    # Config
    "AppConfig",
    "FILTER_LIMITS",
    "MAX_NOTE_LENGTH",
    "ORG_NAMES",
    "RECIPIENT_TYPE_LABELS",
    # Database
    "connect",
    "get_query_stats",
    "get_slow_queries",
    "get_table_count",
    "init_pragmas",
    "query_one",
    "query_scalar",
    "query_to_dicts",
    "transaction",
    # Query
    "build_grant_order_clause",
    "build_grant_where_clause",
    "build_order_clause",
    "build_pagination",
    "clamp_pagination",
    "contains_match",
    "escape_like",
    # Cache
    "TTLCache",
    # Amendments
    "attach_amendments",
    "build_amendment_list",
    # Formatting
    "format_amount",
    "format_count",
    "format_currency",
    "format_date",
    "format_date_diff",
    "truncate_text",
    # Validation
    "clean_note",
    "validate_password",
]
