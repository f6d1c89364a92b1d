class JudgeServiceError(Exception):
    def __init__(self, message):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return f'Judge Error, info: {self.message}'


class JudgeRequestError(JudgeServiceError):
    """Caller input rejected before any workspace or process is allocated."""


class UnsupportedLanguageError(JudgeRequestError):
    def __init__(self, language_id):
        super().__init__(f'Unsupported language: {language_id}')
        self.language_id = language_id


class ResourceError(JudgeServiceError):
    """Scratch space could not be created or written."""
