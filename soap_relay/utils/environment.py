import os

def loadConfigValueFromFileOrEnvironment(key: str, default_value: str = '') -> str:
    """
    Load configuration values from a file or environment variable.
    This function reads the entire file content and strips leading/trailing whitespace.
    """
    VALUE_FILE = os.environ.get(f'{key}_FILE')
    if VALUE_FILE:
        if not os.path.exists(VALUE_FILE) or not os.path.isfile(VALUE_FILE):
            raise FileNotFoundError(f'{key}_FILE is set but the path does not exist or is not a file.')

        with open(VALUE_FILE, 'r') as file:
            file_content = file.read().strip()

        if file_content:
            return file_content

    return os.environ.get(key, default_value)


def loadBoolConfigValue(key: str, default_value: str = 'false', prefer: bool = False) -> bool:
    """
    Load a boolean configuration value.

    With prefer=False only an explicit false value ('false', 'no', 'off', '0')
    returns False; with prefer=True only an explicit true value returns True.
    """
    value = loadConfigValueFromFileOrEnvironment(key, default_value).lower().strip()
    if prefer:
        return value in ['true', 'yes', 'on', '1']
    return value not in ['false', 'no', 'off', '0']
