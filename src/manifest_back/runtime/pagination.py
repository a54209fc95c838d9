"""Page/offset pagination over a compiled ``QuerySpec``."""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from manifest_back.runtime.query_builder import (
    QuerySpec,
    count_select,
    fetch_records,
    id_select,
)

if TYPE_CHECKING:
    from manifest_back.runtime.schema_registry import SchemaSnapshot

logger = logging.getLogger(__name__)

DEFAULT_RESULTS_PER_PAGE = 20
ALL_RESULTS = -1


class Paginator(BaseModel):
    """One page of records. Serialises with camelCase keys (``currentPage``, ``from``)."""

    data: list[dict[str, Any]] = Field(default_factory=list)
    total: int = 0
    current_page: int = 1
    last_page: int = 1
    per_page: int = DEFAULT_RESULTS_PER_PAGE
    from_: int = Field(default=0, alias="from")
    to: int = 0

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def paginate(
    connection: sa.Connection,
    snapshot: SchemaSnapshot,
    query: QuerySpec,
    current_page: int = 1,
    results_per_page: int = DEFAULT_RESULTS_PER_PAGE,
) -> Paginator:
    """
    Run ``query`` for one page.

    Args:
        connection: Open connection (inside the request's transaction)
        snapshot: Schema snapshot the query was compiled against
        query: Compiled query specification
        current_page: 1-based page number
        results_per_page: Page size; ``-1`` returns every row

    Returns:
        Paginator with ``last_page`` of at least 1. Pages past the end have
        empty ``data``.
    """
    current_page = max(current_page, 1)
    total = connection.execute(count_select(query, snapshot)).scalar_one()

    ids_statement = id_select(query, snapshot)
    if results_per_page == ALL_RESULTS:
        per_page = total
        offset = 0
    else:
        per_page = max(results_per_page, 1)
        offset = (current_page - 1) * per_page
        ids_statement = ids_statement.limit(per_page).offset(offset)

    logger.debug("Paged id query for %s: %s", query.entity.class_name, ids_statement)
    ids = [row[0] for row in connection.execute(ids_statement)]
    data = fetch_records(connection, snapshot, query, ids)

    if results_per_page == ALL_RESULTS:
        last_page = 1
    else:
        last_page = max(1, math.ceil(total / per_page))

    return Paginator(
        data=data,
        total=total,
        current_page=current_page if results_per_page != ALL_RESULTS else 1,
        last_page=last_page,
        per_page=per_page,
        from_=offset + 1 if data else 0,
        to=offset + len(data) if data else 0,
    )
