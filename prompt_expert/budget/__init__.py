from prompt_expert.budget.guard import Admission, SizeBudget, SizeBudgetGuard

__all__ = ["Admission", "SizeBudget", "SizeBudgetGuard"]
