"""SQL validation services."""

import re
from typing import List, Optional, Sequence, Tuple

import sqlparse

from schemashift.domain.repositories.interfaces import ISQLValidator

_ADD_COLUMN = re.compile(r"\bADD\s+COLUMN\b", re.IGNORECASE)
_SET_NOT_NULL = re.compile(r"\bSET\s+NOT\s+NULL\b", re.IGNORECASE)


class SQLValidator(ISQLValidator):
    """
    Validates SQL statements.
    Single Responsibility: SQL validation.
    """

    def validate_syntax(self, sql: str) -> Tuple[bool, Optional[str]]:
        """
        Validate SQL syntax.
        Returns (is_valid, error_message).
        """
        parsed = sqlparse.parse(sql)
        if not parsed or not any(str(s).strip() for s in parsed):
            return False, "Empty SQL statement"

        for statement in parsed:
            tokens = [t.value.upper() for t in statement.flatten() if not t.is_whitespace]

            if 'DROP' in tokens and 'DATABASE' in tokens:
                return False, "DROP DATABASE is not allowed"

            if 'TRUNCATE' in tokens:
                return False, "TRUNCATE requires explicit approval"

        if len([s for s in parsed if str(s).strip()]) > 1:
            return False, "Expected a single statement"

        return True, None

    def validate_safety(self, sql: str) -> List[str]:
        """Warnings for statements that may fail or lock on existing data."""
        warnings = []
        statement_type = sqlparse.parse(sql)[0].get_type() if sql.strip() else "UNKNOWN"

        if _ADD_COLUMN.search(sql) and 'NOT NULL' in sql.upper() and 'DEFAULT' not in sql.upper() \
                and 'IDENTITY' not in sql.upper():
            warnings.append(f"Adding NOT NULL column without DEFAULT may fail on existing data: {sql}")

        if _SET_NOT_NULL.search(sql):
            warnings.append(f"SET NOT NULL fails if existing rows hold NULLs: {sql}")

        if statement_type == 'ALTER' and ' TYPE ' in sql.upper() and ' USING ' in sql.upper():
            warnings.append(f"Type conversion rewrites the table and may fail on incompatible values: {sql}")

        return warnings

    def validate_statements(self, statements: Sequence[str]) -> List[str]:
        """Check every statement; syntax problems raise, safety concerns become warnings."""
        warnings: List[str] = []
        for sql in statements:
            is_valid, error = self.validate_syntax(sql)
            if not is_valid:
                raise ValueError(f"Invalid generated SQL ({error}): {sql}")
            warnings.extend(self.validate_safety(sql))
        return warnings
