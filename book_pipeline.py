"""CLI shim -- delegates to bookscribe.cli.main().

Usage:
    python book_pipeline.py pipeline --input book.pdf --model google/gemini-flash-1.5
    python book_pipeline.py combine --input out/book/markdown
"""

from bookscribe.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
