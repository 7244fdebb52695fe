from typing import Optional

class SquaresPoolError(Exception):
    pass

class ValidationError(SquaresPoolError):
    """本地输入不合法（空选区、非正数的随机张数、已被买走的格子），不会碰链"""

class AllowanceError(SquaresPoolError):
    """提交时才发现授权额度不够（比如被外部撤销）"""
    def __init__(self, message: str, allowance: int = 0, required: int = 0):
        super().__init__(message)
        self.allowance = allowance
        self.required = required

class TransactionRejected(SquaresPoolError):
    """用户拒绝签名"""

class TransactionFailed(SquaresPoolError):
    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash

class GuardSuppression(SquaresPoolError):
    """防陈旧确认闸门主动拦下了自动续购，不对用户报错"""
