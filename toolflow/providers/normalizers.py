"""
Per-provider parameter normalizers.

Some providers expect parameters in a shape that upstream steps (or a
language model) rarely produce verbatim, e.g. a ticketing service that wants
``fromStation``/``date`` in ``YYYY-MM-DD`` while workflows say ``from`` and
``tomorrow``. A normalizer rewrites a candidate input before it is validated
against the operation schema. Normalizers are registered in the provider
registry, keyed by provider name.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional


logger = logging.getLogger(__name__)


# (operation_name, candidate_input) -> normalized input
ParameterNormalizer = Callable[[str, Dict[str, Any]], Dict[str, Any]]

DATE_INPUT_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%Y.%m.%d", "%Y%m%d", "%d/%m/%Y", "%m/%d/%Y")
RELATIVE_DAYS = {"today": 0, "tomorrow": 1, "day after tomorrow": 2, "yesterday": -1}


class MappingNormalizer:
    """
    Declarative normalizer built from provider configuration.

    Supports three rewrites, applied in order:
    - rename: alternate field names mapped to the names the provider expects
    - defaults: values filled in when a field is absent
    - date_fields: fields reformatted to ``date_format`` (relative words and
      common date layouts are understood)
    """

    def __init__(
        self,
        rename: Optional[Dict[str, str]] = None,
        defaults: Optional[Dict[str, Any]] = None,
        date_fields: Optional[Iterable[str]] = None,
        date_format: str = "%Y-%m-%d",
        today: Optional[Callable[[], date]] = None,
    ):
        self.rename = dict(rename or {})
        self.defaults = dict(defaults or {})
        self.date_fields = list(date_fields or [])
        self.date_format = date_format
        self._today = today or date.today

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "MappingNormalizer":
        return cls(
            rename=config.get("rename"),
            defaults=config.get("defaults"),
            date_fields=config.get("date_fields"),
            date_format=config.get("date_format", "%Y-%m-%d"),
        )

    def __call__(self, operation: str, params: Dict[str, Any]) -> Dict[str, Any]:
        result = dict(params)

        for alias, target in self.rename.items():
            if alias in result and target not in result:
                result[target] = result.pop(alias)

        for key, value in self.defaults.items():
            result.setdefault(key, value)

        for key in self.date_fields:
            if key in result and result[key] is not None:
                formatted = self.format_date(result[key])
                if formatted is not None:
                    result[key] = formatted

        if result != params:
            logger.debug(f"Normalized parameters for '{operation}': {params} -> {result}")
        return result

    def format_date(self, value: Any) -> Optional[str]:
        """Render a date-ish value in the configured format, or None if unparseable."""
        if isinstance(value, datetime):
            return value.strftime(self.date_format)
        if isinstance(value, date):
            return value.strftime(self.date_format)
        if not isinstance(value, str):
            return None

        text = value.strip().lower()
        if text in RELATIVE_DAYS:
            return (self._today() + timedelta(days=RELATIVE_DAYS[text])).strftime(self.date_format)

        for fmt in DATE_INPUT_FORMATS:
            try:
                return datetime.strptime(value.strip(), fmt).strftime(self.date_format)
            except ValueError:
                continue

        logger.debug(f"Could not parse date value '{value}', leaving unchanged")
        return None


def chain(normalizers: List[ParameterNormalizer]) -> ParameterNormalizer:
    """Compose several normalizers into one, applied left to right."""
    def _apply(operation: str, params: Dict[str, Any]) -> Dict[str, Any]:
        for normalizer in normalizers:
            params = normalizer(operation, params)
        return params
    return _apply
