"""Pure billing domain: time, money, periods, proration, resolvers, state tables."""
