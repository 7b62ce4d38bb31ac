from .arc_client import ArcClient, ArcClientError, get_arc_client
from .balance_service import BalanceService

__all__ = ['ArcClient', 'ArcClientError', 'get_arc_client', 'BalanceService']
