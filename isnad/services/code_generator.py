"""
Human-readable code generator.

Generates year-scoped sequential codes for:
  - ISNAD forms:  ISNAD-{year}-{seq:04d}  (e.g. ISNAD-2026-0001)
  - Packages:     PKG-{year}-{seq:03d}    (e.g. PKG-2026-007)

Codes are unique per table (unique constraint); callers run inside the same
transaction that inserts the row.
"""

from datetime import datetime, timezone

from sqlalchemy import func, select

from isnad.models import db
from isnad.models.isnad import IsnadForm
from isnad.models.package import IsnadPackage


def _generate_yearly_code(code_column, prefix: str, width: int, year: int | None = None) -> str:
    """Next {PREFIX}-{YEAR}-{SEQ} code, sequence restarting every year."""
    year = year or datetime.now(timezone.utc).year
    year_prefix = f"{prefix}-{year}-"
    # Zero-padded suffixes: longer code means larger sequence once the width overflows.
    last = db.session.execute(
        select(code_column)
        .where(code_column.like(f"{year_prefix}%"))
        .order_by(func.length(code_column).desc(), code_column.desc())
        .limit(1)
    ).scalar()
    seq = 1
    if last:
        try:
            seq = int(last.rsplit("-", 1)[1]) + 1
        except (IndexError, ValueError):
            seq = 1
    return f"{year_prefix}{seq:0{width}d}"


def generate_form_code(year: int | None = None) -> str:
    """Generate next form code: ISNAD-2026-0001, ISNAD-2026-0002, ..."""
    return _generate_yearly_code(IsnadForm.form_code, "ISNAD", 4, year)


def generate_package_code(year: int | None = None) -> str:
    """Generate next package code: PKG-2026-001, PKG-2026-002, ..."""
    return _generate_yearly_code(IsnadPackage.package_code, "PKG", 3, year)
