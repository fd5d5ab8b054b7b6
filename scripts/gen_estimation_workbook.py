#!/usr/bin/env python3
"""Synthetic estimation workbook generator.

Produces a workbook shaped like the estimates the ingest pipeline reads:
- a cover sheet ("Portada")
- the breakdown sheet ("03 Desglose f") with a header row and dotted concept codes
- photo / generator sheets with images anchored next to the code they belong to

Used for local smoke runs and for sizing chunk/concurrency settings.
"""
from __future__ import annotations

import argparse
import io
import random
import sys
from pathlib import Path
from typing import Any

import pandas as pd
from openpyxl.drawing.image import Image as XLImage
from PIL import Image

BREAKDOWN_SHEET = "03 Desglose f"
HEADERS = ["Clave", "Descripción", "Unidad", "Cantidad", "Precio unitario", "Importe", "Estado"]
UNITS = ["m", "m2", "m3", "pza", "kg", "lote"]
STATUSES = ["Pendiente", "Aprobado", "En revisión"]


def generate_breakdown(chapters: int, groups: int, items: int, seed: int = 42) -> pd.DataFrame:
    """Breakdown rows: a category row per chapter and group, then coded leaf items.

    Args:
        chapters: Top-level chapters (``1`` .. ``chapters``)
        groups: Groups per chapter
        items: Leaf items per group
        seed: Random seed for reproducible quantities and prices

    Returns:
        DataFrame with the breakdown columns
    """
    rng = random.Random(seed)
    rows: list[list[Any]] = []
    for c in range(1, chapters + 1):
        rows.append([str(c), f"Capítulo {c}", None, None, None, None, None])
        for g in range(1, groups + 1):
            rows.append([f"{c}.{g}", f"Partida {c}.{g}", None, None, None, None, None])
            for i in range(1, items + 1):
                qty = rng.randint(1, 500)
                price = round(rng.uniform(5, 2500), 2)
                rows.append(
                    [
                        f"{c}.{g}.{i}",
                        f"Concepto {c}.{g}.{i}",
                        rng.choice(UNITS),
                        qty,
                        price,
                        round(qty * price, 2),
                        rng.choice(STATUSES),
                    ]
                )
    return pd.DataFrame(rows, columns=HEADERS)


def _png(rng: random.Random, size: tuple[int, int]) -> bytes:
    color = (rng.randrange(256), rng.randrange(256), rng.randrange(256))
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def create_workbook(
    output_path: Path,
    chapters: int,
    groups: int,
    items: int,
    photos: int = 0,
    image_size: tuple[int, int] = (640, 480),
    seed: int = 42,
) -> dict[str, int]:
    """Write the workbook and return what it contains.

    Photos go to "05 Fotos": the concept code in column A, the image anchored in column B
    of the same row. One generator image per chapter goes to "{chapter} Generador" and is
    attributed through the sheet name.
    """
    rng = random.Random(seed)
    df = generate_breakdown(chapters, groups, items, seed)
    leaf_codes = [code for code in df["Clave"] if code.count(".") == 2]

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with pd.ExcelWriter(output_path, engine="openpyxl") as writer:
        pd.DataFrame([["Presupuesto de obra (datos sintéticos)"]]).to_excel(
            writer, sheet_name="Portada", header=False, index=False
        )
        df.to_excel(writer, sheet_name=BREAKDOWN_SHEET, index=False)

        book = writer.book
        if photos:
            ws = book.create_sheet("05 Fotos")
            for n in range(photos):
                row = n * 2 + 1
                ws.cell(row=row, column=1, value=leaf_codes[n % len(leaf_codes)])
                ws.add_image(XLImage(io.BytesIO(_png(rng, image_size))), f"B{row}")
        for c in range(1, chapters + 1):
            ws = book.create_sheet(f"{c} Generador")
            ws.add_image(XLImage(io.BytesIO(_png(rng, image_size))), "B2")

    return {"rows": len(df), "photos": photos, "generators": chapters}


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Generate a synthetic estimation workbook",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # ~1.5k breakdown rows, 24 photos
  %(prog)s data/estimate.xlsx --chapters 4 --groups 10 --items 35 --photos 24

  # large sheet, no photos
  %(prog)s data/large.xlsx --chapters 20 --groups 20 --items 50
        """,
    )
    parser.add_argument("output", type=Path, help="Output .xlsx path")
    parser.add_argument("--chapters", type=int, default=4, help="Top-level chapters (default: 4)")
    parser.add_argument("--groups", type=int, default=10, help="Groups per chapter (default: 10)")
    parser.add_argument("--items", type=int, default=35, help="Items per group (default: 35)")
    parser.add_argument("--photos", type=int, default=24, help="Images on the photo sheet (default: 24)")
    parser.add_argument("--seed", type=int, default=42, help="Random seed (default: 42)")
    parser.add_argument("--dry-run", action="store_true", help="Show the plan without writing")
    args = parser.parse_args()

    if min(args.chapters, args.groups, args.items) <= 0:
        print("Error: --chapters, --groups and --items must be positive", file=sys.stderr)
        return 1
    if args.photos < 0:
        print("Error: --photos must be >= 0", file=sys.stderr)
        return 1

    rows = args.chapters * (1 + args.groups * (1 + args.items))
    print("Workbook plan:")
    print(f"  Output file: {args.output}")
    print(f"  Breakdown rows: {rows:,}")
    print(f"  Photos: {args.photos}, generator sheets: {args.chapters}")
    if args.dry_run:
        print("\n[DRY RUN] Nothing written.")
        return 0

    try:
        info = create_workbook(args.output, args.chapters, args.groups, args.items, args.photos, seed=args.seed)
    except OSError as e:
        print(f"\nError writing workbook: {e}", file=sys.stderr)
        return 1
    print(f"\nCreated {args.output}: rows={info['rows']} photos={info['photos']} generators={info['generators']}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
