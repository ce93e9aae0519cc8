"""Local workbook source."""
