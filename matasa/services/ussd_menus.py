"""
Bilingual USSD prompts and menu tables.

Hausa is the default language; any key missing in Hausa falls back to the
English text.
"""

PROMPTS = {
    "english": {
        "welcome": (
            "Welcome to Community Safety\n"
            "1. Report suspicious activity\n"
            "2. Report incident in progress\n"
            "3. Request help\n"
            "4. Read alerts\n"
            "5. Repeat menu"
        ),
        "suspicious_activity": (
            "What did you see?\n"
            "1. Fight\n"
            "2. Gunshots\n"
            "3. Kidnapping\n"
            "4. Theft\n"
            "5. Other"
        ),
        "incident_in_progress": (
            "What is happening?\n"
            "1. Fire\n"
            "2. Explosion\n"
            "3. Theft\n"
            "4. Violence\n"
            "5. Other"
        ),
        "request_help": (
            "What help do you need?\n"
            "1. Police\n"
            "2. Fire service\n"
            "3. Ambulance\n"
            "4. Community focal point"
        ),
        "severity": "How serious is it?\n1. Low\n2. Medium\n3. High\n4. Critical",
        "location": "Where is it?\n1. Use my network location\n2. Enter village name",
        "village": "Enter village name:",
        "description": "Describe what happened (0 to skip):",
        "callback": "May we call you back?\n1. Yes\n2. No",
        "confirmation": "Confirm report:\n{summary}\n1. Submit\n2. Cancel",
        "thank_you": "Thank you. Your report {incident_id} has been received. Help is on the way.",
        "timeout": "Session ended. Please dial again.",
        "invalid": "Invalid choice.",
        "error": "Something went wrong. Please try again.",
        "submit_failed": "Something went wrong.",
        "no_alerts": "No active alerts.",
        "alerts_header": "Alerts:",
        "rate_limited": "Too many requests. Please try again later.",
        "session_closed": "This session has ended. Please dial again.",
    },
    "hausa": {
        "welcome": (
            "Barka da zuwa Tsaron Al'umma\n"
            "1. Bayar da rahoton abin tuhuma\n"
            "2. Bayar da rahoton abin da ke faruwa\n"
            "3. Nemi taimako\n"
            "4. Karanta sanarwa\n"
            "5. Maimaita menu"
        ),
        "suspicious_activity": (
            "Me ka gani?\n"
            "1. Fada\n"
            "2. Harbin bindiga\n"
            "3. Garkuwa da mutane\n"
            "4. Sata\n"
            "5. Wani abu"
        ),
        "incident_in_progress": (
            "Me ke faruwa?\n"
            "1. Gobara\n"
            "2. Fashewa\n"
            "3. Sata\n"
            "4. Tashin hankali\n"
            "5. Wani abu"
        ),
        "request_help": (
            "Wane taimako kake bukata?\n"
            "1. 'Yan sanda\n"
            "2. 'Yan kwana-kwana\n"
            "3. Motar asibiti\n"
            "4. Wakilin al'umma"
        ),
        "severity": "Yaya tsananin lamarin?\n1. Kadan\n2. Matsakaici\n3. Mai tsanani\n4. Mai matukar tsanani",
        "location": "Ina wurin yake?\n1. Yi amfani da wurin layina\n2. Rubuta sunan kauye",
        "village": "Rubuta sunan kauye:",
        "description": "Bayyana abin da ya faru (0 don tsallakewa):",
        "callback": "Za mu iya kiranka?\n1. Eh\n2. A'a",
        "confirmation": "Tabbatar da rahoto:\n{summary}\n1. Aika\n2. Soke",
        "thank_you": "Na gode. An karbi rahotonka {incident_id}. Taimako yana zuwa.",
        "timeout": "Zaman ya kare. Da fatan za a sake kira.",
        "invalid": "Zabin bai dace ba.",
        "error": "An samu matsala. Da fatan za a sake gwadawa.",
        "submit_failed": "An samu matsala.",
        "no_alerts": "Babu sanarwa a yanzu.",
        "alerts_header": "Sanarwa:",
        "rate_limited": "Bukatu sun yi yawa. Da fatan za a sake gwadawa daga baya.",
    },
}

MAIN_MENU = {
    "1": "suspicious_activity",
    "2": "incident_in_progress",
    "3": "request_help",
}
MAIN_MENU_ALERTS = "4"
MAIN_MENU_REPEAT = "5"

CATEGORY_MENUS = {
    "suspicious_activity": {"1": "fight", "2": "gunshot", "3": "kidnap", "4": "theft", "5": "other"},
    "incident_in_progress": {"1": "fire", "2": "explosion", "3": "theft", "4": "violence", "5": "other"},
}

# choice -> (help service, incident type recorded for the request)
HELP_SERVICES = {
    "1": ("police", "violence"),
    "2": ("fire_service", "fire"),
    "3": ("ambulance", "medical_emergency"),
    "4": ("community_focal", "other"),
}
HELP_REQUEST_SEVERITY = "high"

SEVERITY_MENU = {"1": "low", "2": "medium", "3": "high", "4": "critical"}
LOCATION_NETWORK = "1"
LOCATION_MANUAL = "2"
YES, NO = "1", "2"
SUBMIT, CANCEL = "1", "2"
SKIP_DESCRIPTION = "0"

SUMMARY_DESCRIPTION_CHARS = 50


def get_prompt(key: str, language: str = "hausa", **params) -> str:
    table = PROMPTS.get(language) or PROMPTS["hausa"]
    text = table.get(key) or PROMPTS["english"].get(key, "")
    return text.format(**params) if params else text


def truncate(message: str, max_length: int = 182) -> str:
    if len(message) <= max_length:
        return message
    return message[: max_length - 3] + "..."
