"""Example usage of the vision extractor for receipt data extraction.

This example demonstrates how to use the VisionExtractor to read a receipt
photo with Claude and get structured data back through structured outputs.

Usage: python examples/extract_receipt_example.py path/to/receipt.jpg
"""

import asyncio
import mimetypes
import os
import sys
from pathlib import Path

from receiptsync.currency import format_amount
from receiptsync.errors import AppError
from receiptsync.integrations import VisionExtractor


async def main(path: Path):
    """Example of extracting receipt data from an image."""
    api_key = os.getenv("ANTHROPIC_API_KEY", "your-api-key-here")
    extractor = VisionExtractor(api_key=api_key)

    image = path.read_bytes()
    media_type = mimetypes.guess_type(path.name)[0] or "image/jpeg"

    try:
        result = await extractor.extract(image, media_type=media_type, file_name=path.name)
    except AppError as e:
        print(f"Error during extraction: {e}")
        return

    receipt = result.receipt
    print(f"Merchant: {receipt.merchant_name}")
    print(f"Date: {receipt.date}")
    print(f"Total: {format_amount(receipt.total_amount, receipt.currency)}")
    print(f"Confidence: {receipt.confidence_score:.2f}")

    print(f"\nProcessing time: {result.processing_time:.2f}s")
    print(f"Input tokens: {result.input_tokens}")
    print(f"Output tokens: {result.output_tokens}")
    print(f"Cache read tokens: {result.cache_read_input_tokens}")

    print("\nItems:")
    for item in receipt.items:
        print(f"  - {item.description}: {item.amount}")


if __name__ == "__main__":
    if len(sys.argv) != 2:
        sys.exit("Usage: extract_receipt_example.py RECEIPT_IMAGE")
    asyncio.run(main(Path(sys.argv[1])))
