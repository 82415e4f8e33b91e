from __future__ import annotations

import io
import logging

import pandas as pd
from openpyxl.styles import Font

from case_importer.excel.reader import CASE_COLUMNS, CLIENT_COLUMNS
from case_importer.i18n.catalog import normalize_locale, translate
from case_importer.services.contracts import (
    ClassificationNode,
    DocumentTypeRecord,
    LawyerRecord,
    ReferenceCatalog,
)

"""Localized import template.

Layout (the reader relies on the sheet positions, not their names):
    1. Instructions: considerations, document types, classifications, lawyers
    2. Clients: header row + one example row
    3. Cases: header row + one example row

Required columns carry a trailing ``*`` in the header label.
"""

__all__ = [
    "TemplateGenerator",
    "header_row",
]

logger = logging.getLogger(__name__)

CONSIDERATION_KEYS = [f"instructions.cons_{i}" for i in range(1, 9)]
EXAMPLE_CLIENT_EMAIL = "client@example.com"
EXAMPLE_DOCUMENT_NUMBER = "123456789"
BOLD = Font(bold=True)


def header_row(columns: dict[str, bool], locale: str) -> list[str]:
    return [
        translate(locale, f"headers.{key}") + (" *" if required else "")
        for key, required in columns.items()
    ]


class TemplateGenerator:
    def __init__(self, catalog: ReferenceCatalog, default_locale: str = "en") -> None:
        self.catalog = catalog
        self.default_locale = default_locale

    def generate(self, tenant_id: str, locale: str | None = None) -> bytes:
        """Build the xlsx template for a tenant. Read-only over the reference data."""
        loc = normalize_locale(locale or self.default_locale)
        doc_types = self.catalog.list_document_types(tenant_id)
        classifications = self.catalog.list_classifications(tenant_id)
        lawyers = self.catalog.list_active_lawyers(tenant_id)

        sheets = [
            (translate(loc, "sheets.instructions"), self._instructions(loc, doc_types, classifications, lawyers), None),
            (translate(loc, "sheets.clients"), self._clients(loc, doc_types), 0),
            (translate(loc, "sheets.cases"), self._cases(loc, classifications, lawyers), 0),
        ]

        buf = io.BytesIO()
        with pd.ExcelWriter(buf, engine="openpyxl") as writer:
            for name, df, bold_row in sheets:
                df.to_excel(writer, sheet_name=name, header=False, index=False)
                ws = writer.sheets[name]
                if bold_row is not None:
                    for cell in ws[bold_row + 1]:
                        cell.font = BOLD
                    for col in ws.columns:
                        ws.column_dimensions[col[0].column_letter].width = 22
                else:
                    ws["A1"].font = BOLD
                    ws.column_dimensions["A"].width = 80
        logger.info(
            "template generated tenant=%s locale=%s doc_types=%d classifications=%d lawyers=%d",
            tenant_id, loc, len(doc_types), len(classifications), len(lawyers),
        )
        return buf.getvalue()

    def _instructions(
        self,
        loc: str,
        doc_types: list[DocumentTypeRecord],
        classifications: list[ClassificationNode],
        lawyers: list[LawyerRecord],
    ) -> pd.DataFrame:
        lines = [translate(loc, "instructions.title"), "", translate(loc, "instructions.considerations")]
        for i, key in enumerate(CONSIDERATION_KEYS, start=1):
            text = translate(loc, key)
            if key == "instructions.cons_6":
                codes = ", ".join(d.code for d in doc_types)
                text = f"{text}: {codes}" if codes else text
            lines.append(f"{i}. {text}")
        lines += ["", translate(loc, "instructions.valid_classifications"),
                  translate(loc, "instructions.classification_header")]
        lines += [f"- {node.label()}" for node in classifications]
        if lawyers:
            lines += ["", translate(loc, "instructions.active_lawyers")]
            lines += [f"- {lw.name} <{lw.email}>" for lw in lawyers]
        return pd.DataFrame({"text": lines})

    def _clients(self, loc: str, doc_types: list[DocumentTypeRecord]) -> pd.DataFrame:
        example = {
            "email": EXAMPLE_CLIENT_EMAIL,
            "name": translate(loc, "examples.client_name"),
            "phone": "",
            "document_type": doc_types[0].code if doc_types else "",
            "document_number": EXAMPLE_DOCUMENT_NUMBER,
        }
        return pd.DataFrame([header_row(CLIENT_COLUMNS, loc), [example[k] for k in CLIENT_COLUMNS]])

    def _cases(
        self, loc: str, classifications: list[ClassificationNode], lawyers: list[LawyerRecord]
    ) -> pd.DataFrame:
        node = classifications[0] if classifications else None
        example = {
            "client_email": EXAMPLE_CLIENT_EMAIL,
            "lawyer_email": lawyers[0].email if lawyers else "",
            "legacy_number": "",
            "filing_number": "",
            "title": translate(loc, "examples.case_title"),
            "description": translate(loc, "examples.description"),
            "domain": node.domain if node else "",
            "branch": (node.branch or "") if node else "",
            "subtype": (node.subtype or "") if node else "",
            "status": "OPEN",
            "opened_date": "2024-01-15",
            "closed_date": "",
        }
        return pd.DataFrame([header_row(CASE_COLUMNS, loc), [example[k] for k in CASE_COLUMNS]])
