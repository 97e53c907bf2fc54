"""
Document Processing Package
════════════════════════════

Pure and near-pure building blocks of the extraction pipeline:

  numeric.py      Locale-aware numeric normalizer (Indonesian / international)
  parser.py       Response parser: JSON strategy chain → regex reconstruction → default
  file_types.py   Magic-byte file kind detection, DOCX / text conversion
  spreadsheet.py  openpyxl workbook → text
  images.py       Pillow WebP previews
  chunking.py     Overlapping word windows
  embeddings.py   Bounded-concurrency embedding generator
  strategy.py     Size-based extraction strategy router

Design principles
─────────────────
  • Every component is stateless and dependency-injected.
  • Parsing never raises; extraction failures surface as typed exceptions.
  • Every step emits pipe-delimited log lines.
"""
