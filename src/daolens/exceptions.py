import textwrap
from abc import ABC
from abc import abstractmethod
from dataclasses import dataclass
from typing import Any

tab = ('_' * 80) + '\n\n'


def unindent(text: str) -> str:
    """Remove indentation from text"""
    return textwrap.dedent(text).strip()


def indent(text: str, indent: int = 2) -> str:
    """Add indentation to text"""
    return textwrap.indent(text, ' ' * indent)


def format_help(help: str) -> str:
    """Format help text"""
    return tab + unindent(help) + '\n'


class FrameworkException(AssertionError, RuntimeError):
    pass


class RequestCancelledError(Exception):
    """Request was superseded by a newer one or its consumer was torn down.

    Raised at cancellation cut points and swallowed by `FetchOrchestrator`; never shown to the user.
    """


class Error(ABC, FrameworkException):
    """Base class for _known_ exceptions in this module.

    Instances of this class should have a nice help message explaining the error and how to fix it.
    """

    def __str__(self) -> str:
        if not self.__doc__:
            raise NotImplementedError(f'{self.__class__.__name__} has no docstring')
        return self.__doc__ + ' -> ' + ' '.join(str(a) for a in self.args)

    def help(self) -> str:
        """Return a string containing a help message for this error."""
        return format_help(self._help())

    @classmethod
    def default_help(cls) -> str:
        return format_help(
            """
                An unexpected error has occurred! Most likely it's a bug.

                Run the command again with `DAOLENS_DEBUG=1` and include the output in the report.
        """
        )

    @abstractmethod
    def _help(self) -> str: ...


@dataclass(repr=False)
class SourceUnavailableError(Error):
    """Analytics data could not be loaded from any source"""

    msg: str
    source: str

    def _help(self) -> str:
        return f"""
            `{self.source}` is unavailable: {self.msg}

            The category's data could not be loaded. Nothing was cached; request it again to retry.
        """


@dataclass(repr=False)
class DatasourceError(Error):
    """One of datasources returned an error"""

    msg: str
    datasource: str

    def _help(self) -> str:
        return f"""
            `{self.datasource}` datasource returned an error.

            {self.msg}
        """


@dataclass(repr=False)
class InvalidRequestError(Error):
    """API returned an unexpected response"""

    msg: str
    url: str

    def _help(self) -> str:
        return f"""
            Unexpected response: {self.msg}

            URL: `{self.url}`

            Make sure that config is correct and you're calling the correct API.
        """


@dataclass(repr=False)
class ConfigurationError(Error):
    """daolens YAML config is invalid"""

    msg: str

    def _help(self) -> str:
        return f"""
            {self.msg}

            Run `daolens config export` to see the config as it was resolved.
        """


@dataclass(repr=False)
class InvalidDataError(Error):
    """Failed to validate datasource message against expected type"""

    msg: str
    type_: type[Any]
    data: Any

    def _help(self) -> str:
        return f"""
            Failed to validate datasource message against expected type.

              {self.msg}

            Type class: `{self.type_.__name__}`
            Data: `{self.data}`
        """
