"""Compile structured alert criteria into the search index's filter syntax.

Filter atoms look like ``field:value``; ``field:[a, b]`` matches any listed
value; atoms are joined with ``&&`` and grouped with parentheses, e.g.::

    ((city:Seattle && state:Washington) || isRemote:true) && skills:Python

A disjunction is parenthesised whenever it is combined with other clauses,
since ``&&`` binds tighter than ``||``.
"""

from datetime import datetime
from typing import Any, Iterable, List, Optional

from jobalerts.domain.models import Alert
from jobalerts.utils.timestamps import timestamp_to_unix

LOCATION_FIELDS = ("city", "state", "country", "zipcode")
RANGE_OPERATORS = (">", ">=", "<", "<=", "=", "!=")


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip()


def _clean(values: Optional[Iterable[Any]]) -> List[str]:
    if not values:
        return []
    cleaned = []
    for value in values:
        if value is None:
            continue
        text = _format_value(value)
        if text:
            cleaned.append(text)
    return cleaned


class FilterQueryBuilder:
    """Stateful builder for filter expressions.

    One instance can be reused across a batch of alerts; call reset() (or
    compile_alert_filter(), which does it for you) between alerts.

    Example:
        >>> FilterQueryBuilder().add_location_filters(
        ...     city="Seattle", state="Washington", include_remote=True
        ... ).build()
        '(city:Seattle && state:Washington) || isRemote:true'
    """

    def __init__(self) -> None:
        self._clauses: List[str] = []

    def add_location_filters(
        self,
        city: Optional[str] = None,
        state: Optional[str] = None,
        country: Optional[str] = None,
        zipcode: Optional[str] = None,
        include_remote: bool = False,
    ) -> "FilterQueryBuilder":
        """AND the given location fields; OR the whole group with remote jobs if requested."""
        values = dict(zip(LOCATION_FIELDS, (city, state, country, zipcode)))
        atoms = [
            f"{field}:{_format_value(value)}"
            for field, value in values.items()
            if value is not None and _format_value(value)
        ]

        if atoms and include_remote:
            self._clauses.append(f"({' && '.join(atoms)}) || isRemote:true")
        elif atoms:
            self._clauses.extend(atoms)
        elif include_remote:
            self._clauses.append("isRemote:true")

        return self

    def add_skill_filters(
        self, skills: Optional[Iterable[str]], use_and_logic: bool = True
    ) -> "FilterQueryBuilder":
        """Require every skill (default) or any of them when ``use_and_logic`` is False."""
        values = _clean(skills)
        if not values:
            return self

        if use_and_logic:
            self._clauses.extend(f"skills:{value}" for value in values)
        else:
            self._clauses.append(f"skills:[{', '.join(values)}]")

        return self

    def add_array_filter(
        self, field: str, values: Optional[Iterable[Any]], use_or_logic: bool = True
    ) -> "FilterQueryBuilder":
        """Match any of ``values`` (default) or require each one when ``use_or_logic`` is False."""
        cleaned = _clean(values)
        if not cleaned:
            return self

        if use_or_logic:
            self._clauses.append(f"{field}:[{', '.join(cleaned)}]")
        else:
            self._clauses.extend(f"{field}:{value}" for value in cleaned)

        return self

    def add_single_filter(self, field: str, value: Any) -> "FilterQueryBuilder":
        """Add ``field:value``. None and blank strings are ignored."""
        if value is None:
            return self
        text = _format_value(value)
        if text:
            self._clauses.append(f"{field}:{text}")
        return self

    def add_range_filter(self, field: str, operator: str, value: Any) -> "FilterQueryBuilder":
        """Add a numeric comparison such as ``createdAt:>=1700000000``."""
        if operator not in RANGE_OPERATORS:
            raise ValueError(f"Unsupported range operator '{operator}'")
        if value is None:
            return self
        self._clauses.append(f"{field}:{operator}{_format_value(value)}")
        return self

    def build(self) -> str:
        """Join all clauses with ``&&``. No clauses means an empty filter."""
        if len(self._clauses) == 1:
            return self._clauses[0]
        return " && ".join(
            f"({clause})" if " || " in clause else clause for clause in self._clauses
        )

    def reset(self) -> "FilterQueryBuilder":
        self._clauses = []
        return self

    def __len__(self) -> int:
        return len(self._clauses)


def compile_alert_filter(
    alert: Alert,
    builder: Optional[FilterQueryBuilder] = None,
    created_after: Optional[datetime] = None,
    active_only: bool = True,
) -> str:
    """Compile one alert's criteria into a filter string.

    Location and remote preference come first, then skills (all required),
    job types and experience levels (any of), the ``createdAt`` lower bound
    and finally the active-job restriction.
    """
    builder = (builder or FilterQueryBuilder()).reset()

    builder.add_location_filters(
        city=alert.city,
        state=alert.state,
        country=alert.country,
        include_remote=alert.include_remote,
    )
    builder.add_skill_filters(alert.skills, use_and_logic=True)
    builder.add_array_filter("jobType", alert.job_types)
    builder.add_array_filter("experience", alert.experience_levels)

    if created_after is not None:
        builder.add_range_filter("createdAt", ">=", timestamp_to_unix(created_after))

    if active_only:
        builder.add_single_filter("isActive", True)

    return builder.build()
