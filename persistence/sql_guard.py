import re
from typing import List

from persistence.errors import UnsafeStatementError


class SqlToken:
    __slots__ = ("type", "value")

    def __init__(self, type_: str, value: str):
        self.type = type_
        self.value = value

    def __repr__(self):
        return f"({self.type}, {self.value!r})"


class SqlStatementGuard:
    """
    A lightweight, dependency-free SQL tokenizer for tenant-safety validation.
    Every statement a tenant-scoped operation sends goes through ``validate``.
    """

    KEYWORDS = {
        "UPDATE", "DELETE", "INSERT", "INTO", "SET", "FROM", "WHERE", "AND", "OR",
        "WITH", "VALUES", "SELECT", "RETURNING",
    }
    DENIED = {"TRUNCATE", "DROP", "ALTER", "GRANT", "REVOKE", "CREATE"}

    _WORD = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")

    def __init__(self, required_column: str = "tenant_id"):
        self.required_column = required_column.lower()

    def tokenize(self, text: str) -> List[SqlToken]:
        tokens: List[SqlToken] = []
        i = 0
        n = len(text)

        while i < n:
            char = text[i]

            if char.isspace():
                i += 1
                continue

            # Comments
            if char == '-' and i + 1 < n and text[i + 1] == '-':
                end = text.find('\n', i)
                i = n if end == -1 else end
                continue
            if char == '/' and i + 1 < n and text[i + 1] == '*':
                end = text.find('*/', i)
                if end == -1:
                    raise UnsafeStatementError("Unterminated comment in SQL statement")
                i = end + 2
                continue

            # Strings, with '' escapes
            if char == "'":
                end = i + 1
                while end < n:
                    if text[end] == "'":
                        if end + 1 < n and text[end + 1] == "'":
                            end += 2
                            continue
                        break
                    end += 1
                if end >= n:
                    raise UnsafeStatementError("Unterminated string in SQL statement")
                tokens.append(SqlToken('STRING', text[i:end + 1]))
                i = end + 1
                continue

            # Identifiers / Keywords
            match = self._WORD.match(text, i)
            if match:
                word = match.group(0)
                if word.upper() in self.KEYWORDS:
                    tokens.append(SqlToken('KEYWORD', word.upper()))
                else:
                    tokens.append(SqlToken('IDENTIFIER', word))
                i = match.end()
                continue

            tokens.append(SqlToken('SYMBOL', char))
            i += 1

        return tokens

    def validate(self, sql: str) -> None:
        """
        Reject statements that could touch rows outside the caller's tenant:
        INSERTs must name the tenant column, UPDATE/DELETE must constrain it
        in a WHERE clause without OR.
        """
        tokens = self.tokenize(sql)
        if not tokens:
            raise UnsafeStatementError("Empty SQL statement")

        if any(t.type == 'SYMBOL' and t.value == ';' for t in tokens):
            raise UnsafeStatementError("Multi-statement SQL is not allowed (semicolon detected)")

        first = tokens[0].value.upper()

        if first == "WITH":
            raise UnsafeStatementError("CTE (WITH clause) not allowed in tenant-scoped statements")
        if first in self.DENIED:
            raise UnsafeStatementError(f"Dangerous operation {first} denied")
        if first not in ("UPDATE", "DELETE", "INSERT"):
            return

        if first == "INSERT":
            if not self._names_column(tokens):
                raise UnsafeStatementError(f"INSERT must include {self.required_column} column")
            return

        try:
            where_idx = next(
                i for i, t in enumerate(tokens) if t.type == 'KEYWORD' and t.value == 'WHERE'
            )
        except StopIteration:
            raise UnsafeStatementError(f"{first} requires a WHERE clause")

        where_tokens = tokens[where_idx + 1:]
        returning = next(
            (i for i, t in enumerate(where_tokens) if t.type == 'KEYWORD' and t.value == 'RETURNING'),
            None,
        )
        if returning is not None:
            where_tokens = where_tokens[:returning]
        if not where_tokens:
            raise UnsafeStatementError("Empty WHERE clause")

        if not self._names_column(where_tokens):
            raise UnsafeStatementError(f"WHERE clause must constrain {self.required_column}")
        if any(t.type == 'KEYWORD' and t.value == 'OR' for t in where_tokens):
            raise UnsafeStatementError("OR clauses not allowed in mutation WHERE block")

    def _names_column(self, tokens: List[SqlToken]) -> bool:
        return any(
            t.type == 'IDENTIFIER' and t.value.lower() == self.required_column for t in tokens
        )
