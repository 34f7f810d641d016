# Excel Export Styling
EXCEL_STYLES = {
    "header_bg": "#0f172a",  # Dark Slate 900
    "header_font": "#ffffff",  # White
    "border_color": "#e2e8f0",  # Slate 200
}

HEADER_FORMAT = {
    "bold": True,
    "font_color": EXCEL_STYLES["header_font"],
    "bg_color": EXCEL_STYLES["header_bg"],
    "border": 1,
    "border_color": EXCEL_STYLES["border_color"],
    "align": "center",
    "valign": "vcenter",
}

# Cell rendering
AMOUNT_NUM_FORMAT = "#,##0.00"
TIMESTAMP_PATTERN = "%Y-%m-%d %H:%M:%S"
ELLIPSIS = "..."

# xlsx hard limits: 1,048,576 rows per sheet (one is the header), 32,767 chars per cell
XLSX_MAX_DATA_ROWS = 1_048_575
XLSX_MAX_CELL_LENGTH = 32767

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
DOWNLOAD_FILENAME_PATTERN = "orders_%Y%m%d_%H%M%S.xlsx"

# Export progress logging
PROGRESS_LOG_INTERVAL = 50_000
STREAM_BUFFER_SIZE = 65536
