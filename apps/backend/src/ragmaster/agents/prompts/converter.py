"""
Structured conversion prompt.

Input variables:
  {doc_id}      — Identifier assigned to this document.
  {source_uri}  — Original filename.
  {markdown}    — The (possibly revised) Markdown document.

Output: a single minified JSON object with the fixed top-level field set.
"""

CONVERTER_SYSTEM_PROMPT = """
You are a document converter. Return ONLY valid minified JSON, no markdown code \
blocks, no explanations.
""".strip()

CONVERTER_USER_TEMPLATE = """
You are a converter. Input: (1) full markdown, (2) doc_id, (3) source_uri. Output: a \
single MINIFIED JSON object with fields exactly: doc, content, chunks, augment, \
retrieval_hints, security, embeddings_meta.
Rules:
- In doc, include only: doc_id, canonical_id, created_at, updated_at, checksum_sha256, \
source_type, source_uri, visibility, language, title, toc.
- Generate toc from headings with anchors and char_range.
- Produce chunks of ~200-300 tokens, ~20% overlap; never split code/table blocks. Include: \
chunk_id, position, char_range, section_path, heading, heading_level, type, markdown, \
text, tokens, overlap_tokens, embedding.vector_id, sparse_terms, keywords, entities, citations.
- Populate augment.summary, three highlights, and 1-3 QA items with span_refs pointing \
to chunk_id+char_range.
- Do NOT include version, license, or authors anywhere.
- Do NOT include embedding vectors; only placeholders or ids.
- Return only minified JSON (no comments).

INPUT:
doc_id: {doc_id}
source_uri: {source_uri}

MARKDOWN:
{markdown}
""".strip()
