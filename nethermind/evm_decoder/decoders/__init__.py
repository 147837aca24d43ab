from .contract import ContractDecoder
from .instance import ContractInstanceDecoder
from .wire import EventStream, WireDecoder
