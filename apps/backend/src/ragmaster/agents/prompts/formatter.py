"""
Markdown normalisation prompt used before evaluation.

Input variables:
  {filename}  — Original filename (hints at the source format).
  {content}   — Raw file content.

Output: Markdown text only.
"""

FORMATTER_SYSTEM_PROMPT = """
You are a document formatting expert. Convert documents to well-structured Markdown \
with proper headings.
""".strip()

FORMATTER_USER_TEMPLATE = """
Convert this document to well-structured Markdown format.

Requirements:
1. Identify main sections and create ## headings for them
2. Identify subsections and create ### headings for them
3. Preserve all content but format it as clean Markdown
4. Use proper Markdown syntax (headings, lists, bold, italic, code blocks)
5. Create a logical heading hierarchy based on document structure
6. Return ONLY the converted Markdown, no explanations

Document to convert ({filename}):
{content}
""".strip()
