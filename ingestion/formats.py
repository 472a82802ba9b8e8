"""Format identifiers shared by the document sources and the extractors."""

FOLDER = "application/vnd.google-apps.folder"

GOOGLE_DOCUMENT = "application/vnd.google-apps.document"
GOOGLE_SPREADSHEET = "application/vnd.google-apps.spreadsheet"
GOOGLE_PRESENTATION = "application/vnd.google-apps.presentation"

PDF = "application/pdf"
DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
XLSX = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
PPTX = "application/vnd.openxmlformats-officedocument.presentationml.presentation"
JSON = "application/json"
HTML = "text/html"
PLAIN_TEXT = "text/plain"
CSV = "text/csv"

# Extension fallbacks for sources that do not report a format themselves.
EXTENSION_FORMATS: dict[str, str] = {
    ".pdf": PDF,
    ".docx": DOCX,
    ".xlsx": XLSX,
    ".pptx": PPTX,
    ".json": JSON,
    ".html": HTML,
    ".htm": HTML,
    ".txt": PLAIN_TEXT,
    ".md": "text/markdown",
    ".csv": CSV,
}
