# /leadflow/config/strings.py

# User-facing strings sent by the flow engine on behalf of a company.
# Companies override message bodies per node; these are the fallbacks.

QUESTION_OPTION_LINE = "{index}. {option}"

# WhatsApp reply buttons are limited to three per message and 20 chars per title.
MAX_REPLY_BUTTONS = 3
MAX_BUTTON_TITLE_LENGTH = 20

# Interactive messages require a non-empty body.
EMPTY_INTERACTIVE_BODY = "Escolha uma opção:"
