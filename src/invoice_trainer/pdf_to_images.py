"""Minimal CLI that outputs page images to data/pdf_images/<pdf name>."""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Callable, List, Optional

from pdf2image import convert_from_bytes, convert_from_path

PAGE_IMAGE_TEMPLATE = "page_{:04d}.png"


def render_document_pages(
    source: Path | bytes,
    output_dir: Path,
    *,
    dpi: int = 150,
    on_page: Optional[Callable[[Path], None]] = None,
) -> List[Path]:
    """Rasterize every page of ``source`` (a path or raw PDF bytes) to PNG files."""
    output_dir.mkdir(parents=True, exist_ok=True)
    if isinstance(source, bytes):
        pages = convert_from_bytes(source, dpi=dpi, use_pdftocairo=True)
    else:
        pages = convert_from_path(str(source), dpi=dpi, use_pdftocairo=True)

    written: List[Path] = []
    for i, page in enumerate(pages, start=1):
        target = output_dir / PAGE_IMAGE_TEMPLATE.format(i)
        page.save(target, format="PNG")
        written.append(target)
        if on_page is not None:
            on_page(target)
    return written


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Dump PDF pages into data/pdf_images/<name>/")
    parser.add_argument("pdf", help="Path to the PDF to convert")
    parser.add_argument("--dpi", type=int, default=150, help="Image resolution")
    parser.add_argument("--output-root", default="data/pdf_images", help="Parent directory for page images")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    pdf_path = Path(args.pdf)
    if not pdf_path.is_file():
        print(f"PDF not found: {pdf_path}", file=sys.stderr)
        return 1

    output_dir = Path(args.output_root) / pdf_path.stem
    print(f"Writing images to {output_dir}")

    try:
        pages = render_document_pages(
            pdf_path,
            output_dir,
            dpi=args.dpi,
            on_page=lambda target: print(f"  wrote {target}"),
        )
    except Exception as exc:
        print(f"Conversion failed: {exc}", file=sys.stderr)
        return 1

    print(f"Completed {len(pages)} pages")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
