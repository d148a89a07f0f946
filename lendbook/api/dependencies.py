"""
Request dependencies
"""

from fastapi import Request

from ..system import LendingSystem


def get_lending_system(request: Request) -> LendingSystem:
    """The LendingSystem attached to the running application"""
    return request.app.state.system
