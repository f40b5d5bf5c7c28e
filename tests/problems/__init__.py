from .trueskill import trueskill_model, game_values, no_reviews, bind_all

__all__ = ["trueskill_model", "game_values", "no_reviews", "bind_all"]
