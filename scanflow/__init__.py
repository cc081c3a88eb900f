"""
Scanflow
========

Turns photographed document pages into clean, searchable documents.

Main components:
- Page detection and perspective rectification
- Parallel text recognition on a pool of Tesseract workers
- Column-aware reading-order reconstruction
- Editable document model with undo/redo and persisted history
- Export to plain text, HTML, DOCX and (searchable) PDF
"""

__version__ = "1.0.0"
__author__ = "Scanflow Team"
