"""
Writer — serialize the run receipt to JSON.

Filesystem layout:
    <target_dir>/boot_harness/run_receipt.json
"""
import json
from pathlib import Path

from boot_harness.io.schema import RunReceipt

RECEIPT_NAME = "run_receipt.json"


def write_receipt(receipt: RunReceipt, output_dir: Path) -> Path:
    """
    Write run_receipt.json into *output_dir*.

    Creates *output_dir* if it does not exist.
    Returns the receipt path.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    receipt_path = output_dir / RECEIPT_NAME
    receipt_path.write_text(
        json.dumps(
            receipt.model_dump(mode="json"),
            indent=2,
            sort_keys=True,
        )
        + "\n"
    )
    return receipt_path
