import logging
import os
import stat
import threading
from pathlib import Path
from typing import Optional, Set

from .errors import ConfigurationError, ConflictError
from .models import Conflict, ConflictAction, Resolution

logger = logging.getLogger(__name__)

MAX_SUFFIX_ATTEMPTS = 1000

PROMPT_CHOICES = {
    's': ConflictAction.SKIP,
    'r': ConflictAction.REPLACE,
    'a': ConflictAction.SUFFIX,
}


class FixedDecision:
    """Non-interactive provider: answers every conflict with a configured action."""
    interactive = False

    def __init__(self, action: ConflictAction):
        self.action = action

    def choose(self, conflict: Conflict) -> ConflictAction:
        return self.action

    def apply_to_all(self, action: ConflictAction) -> bool:
        return False


class InteractivePrompt:
    """Asks the user on the terminal how to handle each conflict."""
    interactive = True

    def choose(self, conflict: Conflict) -> ConflictAction:
        prompt = (
            f"File conflict: '{conflict.destination}' already exists.\n"
            f"What would you like to do? (s) Skip, (r) Replace, (a) Add suffix: "
        )
        while True:
            try:
                answer = input(prompt).strip().lower()
            except EOFError:
                logger.warning(f"\nInput stream closed (EOF). Skipping '{conflict.source}'.")
                return ConflictAction.SKIP

            action = PROMPT_CHOICES.get(answer[:1])
            if action is not None:
                return action
            logger.warning(f"Invalid choice: '{answer}'. Please answer 's', 'r' or 'a'.")

    def apply_to_all(self, action: ConflictAction) -> bool:
        try:
            answer = input(f"Apply '{action.value}' to all remaining conflicts? (y/N): ").strip().lower()
        except EOFError:
            logger.warning("\nInput stream closed (EOF). Not applying to all.")
            return False
        return answer.startswith('y')


class ConflictResolver:
    """
    Decides where a file goes when its computed destination is taken.

    Free destinations are claimed with an exclusive create, so two workers
    can never be handed the same path. An empty file at the destination
    that this run did not create is a placeholder from an interrupted run
    and counts as free. When a destination is taken the
    run's sticky policy applies if one is set; otherwise the decision
    provider is asked. Prompts are serialized, one at a time.

    Args:
        provider: Supplies decisions. Defaults to a `FixedDecision` for `default`.
        default: The action to use when no provider is given.
        dry_run: Check for existing files instead of claiming paths.
        max_attempts: How many suffixed names to try before giving up.

    Raises:
        ConfigurationError: If neither a provider nor a default is given.
    """

    def __init__(self, provider=None, default: Optional[ConflictAction] = None,
                 dry_run: bool = False, max_attempts: int = MAX_SUFFIX_ATTEMPTS):
        if provider is None:
            if default is None:
                raise ConfigurationError(
                    "No conflict resolution default configured and no interactive input "
                    "available. Choose one with --on-conflict (skip, replace or suffix)."
                )
            provider = FixedDecision(default)
        self.provider = provider
        self.dry_run = dry_run
        self.max_attempts = max_attempts
        self.sticky: Optional[ConflictAction] = None
        self._prompt_lock = threading.Lock()
        self._claim_lock = threading.Lock()
        self._claimed: Set[Path] = set()

    def resolve(self, source: Path, destination: Path) -> Optional[Resolution]:
        """
        Resolves the final destination for `source`.

        Returns:
            The `Resolution` to transfer to, or None if the file is to be skipped.

        Raises:
            ConflictError: If no free suffixed name was found within `max_attempts`.
        """
        if self._claim(destination):
            return Resolution(destination, reserved=not self.dry_run)

        action = self.decide(Conflict(source, destination))
        logger.info(f"Conflict at '{destination}': {action.value}")

        if action is ConflictAction.SKIP:
            return None
        if action is ConflictAction.REPLACE:
            return Resolution(destination, reserved=False)
        return self._next_free_path(destination)

    def decide(self, conflict: Conflict) -> ConflictAction:
        if self.sticky is not None:
            return self.sticky

        with self._prompt_lock:
            # Another worker may have set the policy while we waited.
            if self.sticky is not None:
                return self.sticky
            action = self.provider.choose(conflict)
            if self.provider.interactive and self.provider.apply_to_all(action):
                self.sticky = action
                logger.info(f"Applying '{action.value}' to all remaining conflicts.")
            return action

    def release(self, resolution: Resolution) -> None:
        """Removes the placeholder of a claimed path that was not used."""
        if not resolution.reserved:
            return
        with self._claim_lock:
            try:
                resolution.path.unlink(missing_ok=True)
            except OSError as e:
                logger.error(f"Could not remove placeholder '{resolution.path}': {e}")
                return
            self._claimed.discard(resolution.path)

    def _next_free_path(self, destination: Path) -> Resolution:
        for counter in range(1, self.max_attempts + 1):
            candidate = destination.with_name(f"{destination.stem}_{counter}{destination.suffix}")
            if self._claim(candidate):
                return Resolution(candidate, reserved=not self.dry_run)
        raise ConflictError(
            f"Could not find a free name for '{destination.name}' in '{destination.parent}' "
            f"after {self.max_attempts} attempts."
        )

    def _claim(self, path: Path) -> bool:
        """
        Reserves `path` for this run. A path is free if nothing exists there,
        or if it holds an empty placeholder left behind by an interrupted
        run. Paths handed out earlier in this run are never free, which also
        keeps dry runs from reporting the same name twice.
        """
        with self._claim_lock:
            if path in self._claimed:
                return False
            if self.dry_run:
                free = not os.path.lexists(path) or self._is_stale_placeholder(path)
            else:
                free = self._create_placeholder(path)
            if free:
                self._claimed.add(path)
            return free

    def _create_placeholder(self, path: Path) -> bool:
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL)
        except FileExistsError:
            if self._is_stale_placeholder(path):
                logger.warning(f"Reusing empty placeholder left by an interrupted run: '{path}'")
                return True
            return False
        os.close(fd)
        return True

    @staticmethod
    def _is_stale_placeholder(path: Path) -> bool:
        try:
            st = os.lstat(path)
        except OSError:
            return False
        return stat.S_ISREG(st.st_mode) and st.st_size == 0
