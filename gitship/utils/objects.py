from typing import (
    Any,
    Callable,
    Generic,
    Optional,
    Type,
    TypeVar,
    cast,
)

RT = TypeVar("RT")


class cached_property(Generic[RT]):
    """Cached property.

    A property descriptor that caches the return value of the get function
    on the instance. Deleting the attribute drops the cached value so the
    next access recomputes it.

    Examples:
        .. sourcecode:: python

            @cached_property
            def spec(self):
                return GitshipAppSpecSchema().load(self.raw_spec)
    """

    def __init__(
        self,
        fget: Callable[[Any], RT],
        doc: str = None,
    ) -> None:
        self.__get: Callable[[Any], RT] = fget
        self.__doc__ = doc or fget.__doc__
        self.__name__ = fget.__name__
        self.__module__ = fget.__module__

    def is_set(self, obj: Any) -> bool:
        return self.__name__ in obj.__dict__

    def __get__(self, obj: Any, type: Type = None) -> RT:
        if obj is None:
            return cast(RT, self)
        try:
            return cast(RT, obj.__dict__[self.__name__])
        except KeyError:
            value = obj.__dict__[self.__name__] = self.__get(obj)
            return value

    def __set__(self, obj: Any, value: RT) -> None:
        obj.__dict__[self.__name__] = value

    def __delete__(self, obj: Any, _sentinel: Optional[Any] = None) -> None:
        obj.__dict__.pop(self.__name__, None)
