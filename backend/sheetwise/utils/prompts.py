"""Default prompts for the vision models.

The segmentation prompt asks for bounding boxes on a 1000x1000 grid;
the extraction prompt asks for one JSON object per cropped receipt,
or ``{}`` when the image cannot be read.
"""

from __future__ import annotations


def get_default_segmentation_prompt() -> str:
    """Return the instructions used to locate receipts on a sheet."""
    return """
You are an expert at identifying receipts in images.
Analyze the provided image and identify all distinct receipts.
For each distinct receipt found, provide its bounding box in the following JSON format:
[
  {"x": int, "y": int, "width": int, "height": int}
]

IMPORTANT INSTRUCTIONS:
- Coordinates are relative to a 1000x1000 grid where [0,0] is the top-left and [1000,1000] the bottom-right.
- x is the LEFT edge of the receipt, y is the TOP edge.
- width and height are the FULL extent of the receipt.
- Be generous: include a margin so that no part of any receipt is cut off.
- Receipts placed side by side must each get accurate, independent coordinates.
- If the image contains no receipt, return an empty array [].
- Return ONLY the JSON array, no other text or explanation.
""".strip()


def get_default_extraction_prompt() -> str:
    """Return the instructions used to read one cropped receipt."""
    return """
You are an expert receipt processing engine. Analyze the provided receipt image with extreme accuracy.
First, assess the image quality. If the image is too blurry, dark, or otherwise unreadable to
confidently extract data, return an empty JSON object {}.

If the image is readable, return a JSON object with this structure:
{
  "merchantName": "string",
  "transactionDate": "string (YYYY-MM-DD)",
  "transactionTime": "string (HH:MM:SS)",
  "items": [{"description": "string", "quantity": number, "quantityUnit": "string", "price": number, "keywords": ["string"]}],
  "subtotal": number | null,
  "tax": number | null,
  "total": number,
  "currency": "string (ISO 4217 code, e.g. USD)",
  "keywords": ["string"]
}

- The 'total' field is mandatory. If you cannot find it, return {}.
- 'price' is the line total for the item (quantity times unit price).
- Root-level 'keywords' are general categories for the purchase (e.g. "groceries", "dinner").
- Item-level 'keywords' are specific categories (e.g. "fruit", "beverage").
- Use null where a value is not present (subtotal, tax).
- All monetary values must be numbers, not strings.

Return a single JSON object with no other text and no markdown code fences.
""".strip()
