"""Prompts for column extraction, prompt hints and data questions.

Formatting directives are keyed by field type so every column of the same
type renders its values the same way across documents.
"""

from models import Confidence, FieldType

EXTRACTION_SYSTEM_INSTRUCTION = (
    "You are a precise data extraction agent. You must extract data exactly as requested."
)

FORMAT_DIRECTIVES: dict[FieldType, str] = {
    FieldType.DATE: "Format the date as YYYY-MM-DD.",
    FieldType.BOOLEAN: "Return 'true' or 'false' as the value string.",
    FieldType.NUMBER: "Return a clean number string, removing currency symbols if needed.",
    FieldType.LIST: "Return the items as a comma-separated string.",
    FieldType.FILE: "Note: Files should be uploaded manually. This column is for file attachments.",
    FieldType.SHORT_TEXT: "Keep the text concise.",
    FieldType.LONG_TEXT: "Keep the text concise.",
}

EXTRACTION_RESPONSE_SCHEMA: dict = {
    "type": "OBJECT",
    "properties": {
        "value": {
            "type": "STRING",
            "description": "The extracted answer. Keep it concise.",
        },
        "confidence": {
            "type": "STRING",
            "enum": [c.value for c in Confidence],
            "description": "Confidence level of the extraction.",
        },
        "quote": {
            "type": "STRING",
            "description": "Verbatim text from the document supporting the answer. Must be exact substring.",
        },
        "page": {
            "type": "INTEGER",
            "description": "The page number where the information was found (approximate if not explicit).",
        },
        "reasoning": {
            "type": "STRING",
            "description": "A short explanation of why this value was selected.",
        },
    },
    "required": ["value", "confidence", "quote", "reasoning"],
}

_EXTRACTION_TASK = """Task: Extract specific information from the provided document.

Column Name: "{name}"
Extraction Instruction: {instruction}

Format Requirements:
- {format_directive}
- Provide a confidence score (High/Medium/Low).
- Include the exact quote from the text where the answer is found.
- Provide a brief reasoning."""

_PROMPT_HINT_TASK = """I need to configure a Large Language Model to extract a specific data field from business documents.

Field Name: "{name}"
Field Type: "{type}"
{draft}
Please write a clear, effective prompt that I can send to the LLM to get the best extraction results for this field.
The prompt should describe what to look for and how to handle edge cases if applicable.
Return ONLY the prompt text, no conversational filler."""

_DATA_ANALYST_INSTRUCTION = """You are an intelligent data analyst assistant.
You have access to a dataset extracted from documents (provided in context).

User Query: {question}

{data_context}

Instructions:
1. Answer the user's question based strictly on the provided data table.
2. If comparing documents, mention them by name.
3. If the data is missing or N/A, state that clearly.
4. Keep answers professional and concise."""

DOCUMENT_CONTENT_PREFIX = "DOCUMENT CONTENT:\n"


def format_directive(field_type: FieldType) -> str:
    return FORMAT_DIRECTIVES.get(field_type, FORMAT_DIRECTIVES[FieldType.SHORT_TEXT])


def extraction_task(name: str, instruction: str, field_type: FieldType) -> str:
    return _EXTRACTION_TASK.format(
        name=name,
        instruction=instruction,
        format_directive=format_directive(field_type),
    )


def prompt_hint_task(name: str, field_type: str, draft_prompt: str | None) -> str:
    draft = f'Draft Prompt: "{draft_prompt}"\n' if draft_prompt else ""
    return _PROMPT_HINT_TASK.format(name=name, type=field_type, draft=draft)


def fallback_prompt_hint(name: str) -> str:
    return f"Extract the {name} from the document."


def data_analyst_instruction(question: str, data_context: str) -> str:
    return _DATA_ANALYST_INSTRUCTION.format(question=question, data_context=data_context)
