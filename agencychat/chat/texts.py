"""
User-facing texts. Agencies run the chat in Hebrew; nothing here may carry
internal ids or exception details.
"""

# Router rejections
NO_WRITE_PERMISSION = "אין הרשאה לשלוח הודעה בשיחה זו"
NO_READ_PERMISSION = "אין הרשאה לגשת לשיחה זו"
RATE_LIMITED = "חריגה ממגבלת השליחה. נסה שוב מאוחר יותר"
CONVERSATION_CLOSED = "השיחה אינה פעילה"
FILE_UPLOADS_DISABLED = "שליחת קבצים אינה מאופשרת בשיחה זו"
MESSAGE_NOT_FOUND = "ההודעה לא נמצאה"
MESSAGE_DELETED = "לא ניתן לערוך הודעה שנמחקה"
NOT_MESSAGE_OWNER = "אין הרשאה לשנות הודעה זו"
EMPTY_MESSAGE = "לא ניתן לשלוח הודעה ריקה"
SEND_FAILED = "שליחת ההודעה נכשלה"

# Gateway
INVALID_AUTH = "נתוני אימות לא תקינים"
NOT_AUTHENTICATED = "יש להתחבר לפני שליחת בקשות"
MISSING_FIELDS = "חסרים נתונים בבקשה"
UNSUPPORTED_TYPE = "סוג הודעה לא נתמך"
PROCESSING_ERROR = "שגיאה בעיבוד ההודעה"
AI_ADMIN_ONLY = "העוזר הדיגיטלי זמין למנהלי הסוכנות בלבד"

# AI assistant
AI_UNAVAILABLE = "שירות העוזר הדיגיטלי אינו זמין כרגע"
AI_EMPTY_REPLY = "מצטער, לא הצלחתי לעבד את הבקשה"
AI_ERROR = "אירעה שגיאה בעוזר הדיגיטלי. נסה שוב מאוחר יותר"
AI_CONTEXT_HEADER = "קונטקסט השיחה האחרונה:"
AI_INSTRUCTIONS = """הנחיות:
- ענה באופן מקצועי ובעברית
- השתמש במידע הסוכנות אם זמין
- אם אינך יודע משהו, הודה על כך
- הצע פתרונות מעשיים"""

# Support bot
BOT_UNAVAILABLE = "שירות התמיכה אינו זמין כרגע"
BOT_HELP_MENU = (
    "אני כאן לעזור! באיזה תחום תרצה סיוע?\n"
    "• שאלות טכניות\n"
    "• מידע על שירותים\n"
    "• תמיכה כללית\n"
    "\n"
    "לחילופין, תוכל לדבר עם נציג אנושי"
)
BOT_TRANSFER = "מעביר אותך לנציג אנושי. אנא המתן רגע..."
BOT_FALLBACK = "לא הבנתי את הבקשה. האם תוכל לנסח אותה מחדש? או לחלופין תוכל לדבר עם נציג אנושי"
BOT_DEFAULT_NAME = "עוזר התמיכה"
