"""
Code generator tests.

Tests cover:
  - First code of a year, sequence per year
  - Sequence keeps counting past the zero-padded width
"""
from isnad.models import db
from isnad.models.package import IsnadPackage
from isnad.services.code_generator import generate_form_code, generate_package_code


def _package(code):
    db.session.add(IsnadPackage(package_code=code, package_name=f"Batch {code}"))
    db.session.commit()


class TestPackageCodes:
    def test_first_code_of_year(self):
        assert generate_package_code(2026) == "PKG-2026-001"

    def test_sequence_is_per_year(self):
        _package("PKG-2025-041")
        assert generate_package_code(2025) == "PKG-2025-042"
        assert generate_package_code(2026) == "PKG-2026-001"

    def test_counts_past_padding_width(self):
        _package("PKG-2026-998")
        _package("PKG-2026-999")
        _package("PKG-2026-1000")
        assert generate_package_code(2026) == "PKG-2026-1001"


class TestFormCodes:
    def test_follows_created_forms(self, form_at_stage):
        form = form_at_stage()
        year, seq = form["form_code"].split("-")[1:]
        assert seq == "0001"
        assert generate_form_code(int(year)) == f"ISNAD-{year}-0002"
