import csv
import io
import json

CSV_HEADER = ["Check Name", "Status", "Expected", "Actual", "Drift %", "Threshold %", "Message"]


def export_json(result: dict) -> str:
    return json.dumps(result, indent=2, default=str)


def export_csv(result: dict) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for check in result.get("checks", []):
        writer.writerow(
            [
                check["name"],
                check["status"],
                check["expected"],
                check["actual"],
                f"{check['drift']:.2f}",
                f"{check['threshold']:.2f}",
                check["message"],
            ]
        )
    return buffer.getvalue()
