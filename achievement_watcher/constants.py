APP_NAME = "Achievement-Watcher"
APP_AUTHOR = "AchievementWatcher"

# Values below this are epoch seconds, not milliseconds
EPOCH_SECONDS_THRESHOLD = 10_000_000_000

PLATFORM_STEAM = "steam"
PLATFORM_STEAM_OFFICIAL = "steam-official"
PLATFORM_UPLAY = "uplay"
PLATFORM_EPIC = "epic"
PLATFORM_GOG = "gog"
PLATFORM_XENIA = "xenia"
PLATFORM_RPCS3 = "rpcs3"
PLATFORM_SHADPS4 = "shadps4"
PLATFORM_LUMAPLAY = "lumaplay"

VALID_PLATFORMS = frozenset({
    PLATFORM_STEAM,
    PLATFORM_STEAM_OFFICIAL,
    PLATFORM_UPLAY,
    PLATFORM_EPIC,
    PLATFORM_GOG,
    PLATFORM_XENIA,
    PLATFORM_RPCS3,
    PLATFORM_SHADPS4,
    PLATFORM_LUMAPLAY,
})

HIDDEN_PLACEHOLDER = "Hidden"
DEFAULT_LANGUAGE = "english"

ICON_SUBFOLDERS = (
    "achievement_images",
    "steam_settings/achievement_images",
    "img",
    "steam_settings/img",
    "images",
    "steam_settings/images",
)

LUMAPLAY_ROOT_KEY = "HKCU\\SOFTWARE\\LumaPlay"

# PS4 TROP_NN.XML suffix -> language key
PS4_LANG_MAP = {
    "00": "japanese",
    "01": "english",
    "02": "french",
    "03": "spanish",
    "04": "german",
    "05": "italian",
    "06": "dutch",
    "07": "portuguese",
    "08": "russian",
    "09": "koreana",
    "10": "tchinese",
    "11": "schinese",
    "12": "finnish",
    "13": "swedish",
    "14": "danish",
    "15": "norwegian",
    "16": "polish",
    "17": "brazilian",
    "18": "english",
    "19": "turkish",
    "20": "latam",
    "21": "arabic",
    "22": "french",
    "23": "czech",
    "24": "hungarian",
    "25": "greek",
    "26": "romanian",
    "27": "thai",
    "28": "vietnamese",
    "29": "indonesian",
    "30": "ukrainian",
}

TROPHY_GRADES = {
    "P": "platinum",
    "G": "gold",
    "S": "silver",
    "B": "bronze",
}
